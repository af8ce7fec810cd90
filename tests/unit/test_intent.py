"""Tests for heuristic intent classification."""

import pytest
from duckbake.intent import classify, wants_data, wants_documents
from duckbake.models import IntentResult


class TestClassify:
    @pytest.mark.parametrize(
        "query",
        [
            "How many orders per region?",
            "Show the top 5 customers by revenue",
            "Monthly sales trend",
        ],
    )
    def test_data_questions(self, query):
        result = classify(query)
        assert result.intent == "sql"
        assert 0 < result.confidence <= 1

    @pytest.mark.parametrize(
        "query",
        [
            "What does the handbook say about vacation?",
            "According to the policy, who approves expenses?",
        ],
    )
    def test_document_questions(self, query):
        assert classify(query).intent == "document"

    def test_mixed_question(self):
        result = classify("What does the report say about total sales?")
        assert result.intent == "both"
        assert result.confidence == 0.7

    @pytest.mark.parametrize(
        "query",
        [
            "What does the handbook say about vacation?",
            "According to the policy, who approves expenses?",
            "Summarize the memo",
        ],
    )
    @pytest.mark.parametrize("keyword", ["count", "revenue", "per", "monthly", "sql", "percent"])
    def test_data_keyword_rules_out_document_only(self, query, keyword):
        assert classify(query).intent == "document"
        assert classify(f"{query} {keyword}").intent in ("both", "sql")

    def test_no_signal_falls_back_to_both(self):
        result = classify("hello there")
        assert result.intent == "both"
        assert result.confidence == 0.5

    def test_empty_query(self):
        assert classify("").intent == "both"

    def test_case_insensitive(self):
        assert classify("HOW MANY ORDERS").intent == classify("how many orders").intent

    def test_confidence_grows_with_matches(self):
        one = classify("count")
        many = classify("count orders by region over time")

        assert one.intent == many.intent == "sql"
        assert one.confidence < many.confidence
        assert many.confidence == 1.0

    def test_confidence_saturates(self):
        result = classify("total sales per month, top products, percent of revenue from sql table")
        assert result.confidence == 1.0


class TestSearchSelection:
    def test_sql_searches_only_data(self):
        result = IntentResult(intent="sql", confidence=1.0)
        assert wants_data(result) and not wants_documents(result)

    def test_document_searches_only_documents(self):
        result = IntentResult(intent="document", confidence=1.0)
        assert wants_documents(result) and not wants_data(result)

    def test_both_searches_everything(self):
        result = IntentResult(intent="both", confidence=0.5)
        assert wants_data(result) and wants_documents(result)
