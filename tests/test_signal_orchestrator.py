"""
Tests for signal orchestration.

Covers:
- Weighted composite, confidence and detection flags
- Concurrent provider execution with failure isolation and timeouts
- Batch scoring and fallback ranking
- Storable column values and their round trip through the scorer
"""

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock, patch

import pytest

from partnermatch.services.signal_orchestrator import (
    SIGNAL_WEIGHTS,
    FallbackConfig,
    SignalContext,
    SignalResult,
    calculate_batch_signals,
    calculate_company_signals,
    calculate_composite_score,
    create_error_score,
    execute_signals,
    filter_and_rank_companies,
    prepare_signal_updates,
    to_storable_signal_data,
)
from partnermatch.services.signals import build_signal_evidence, map_company_to_signals


class StaticProvider:
    """Provider returning a fixed result, raising, or never finishing."""

    def __init__(self, name, result=None, error=None, hang=False):
        self.name = name
        self.weight = SIGNAL_WEIGHTS.get(name, 0.0)
        self.result = result
        self.error = error
        self.hang = hang
        self.calls = 0

    async def calculate(self, context):
        self.calls += 1
        if self.hang:
            await asyncio.Event().wait()
        if self.error:
            raise self.error
        return self.result


def full_results():
    return {
        "job_skills_match": SignalResult(score=80, confidence=0.9),
        "market_intelligence": SignalResult(score=60, confidence=0.8, raw_data={"hasFundingNews": True}),
        "department_fit": SignalResult(score=70, confidence=0.6, raw_data={"technologyMatchScore": 0.8}),
        "contact_quality": SignalResult(score=50, confidence=0.7),
    }


def providers_for(results):
    return [StaticProvider(name, result=r) for name, r in results.items()]


def make_context(name="Acme"):
    return SignalContext(
        company={"id": "c1", "name": name},
        syllabus_skills=["python", "sql"],
        syllabus_domain="data analytics",
    )


class TestCalculateCompositeScore:
    """Tests for the weighted composite."""

    def test_weights_sum_to_one(self):
        assert sum(SIGNAL_WEIGHTS.values()) == pytest.approx(1.0)

    def test_weighted_overall(self):
        composite = calculate_composite_score(full_results(), "Acme")

        assert composite.overall == 67
        assert composite.confidence == "high"
        assert composite.errors == []
        assert composite.components.job_skills_match == 80

    def test_detection_flags(self):
        detected = calculate_composite_score(full_results(), "Acme").signals_detected

        assert detected.has_active_job_postings is True
        assert detected.has_funding_news is True
        assert detected.has_hiring_news is False
        assert detected.has_department_growth is True
        assert detected.has_technology_match is True
        assert detected.has_decision_makers is True

    def test_breakdown(self):
        breakdown = calculate_composite_score(full_results(), "Acme").breakdown

        assert breakdown.startswith("Signal Analysis for Acme:")
        assert "• Skills Match: 80/100 (weight: 35%)" in breakdown
        assert "• Contact Quality: 50/100 (weight: 20%)" in breakdown
        assert "active hiring, recent funding, department growth, tech alignment, reachable leaders" in breakdown

    def test_missing_providers_count_as_zero(self):
        composite = calculate_composite_score(
            {"job_skills_match": SignalResult(score=100, confidence=0.5)}, "Acme"
        )

        assert composite.overall == 35
        assert composite.confidence == "low"  # 0.5 / 4
        assert composite.components.market_intelligence == 0

    def test_single_confident_provider_does_not_inflate_confidence(self):
        """Missing providers contribute zero confidence to the mean."""
        composite = calculate_composite_score(
            {"job_skills_match": SignalResult(score=90, confidence=0.9)}, "Acme"
        )
        assert composite.confidence == "low"

    def test_three_of_four_providers(self):
        results = full_results()
        del results["contact_quality"]
        # (0.9 + 0.8 + 0.6 + 0) / 4 = 0.575
        assert calculate_composite_score(results, "Acme").confidence == "medium"

    def test_unknown_provider_is_ignored(self):
        results = {"job_skills_match": SignalResult(score=80, confidence=0.4), "other": SignalResult(50, 1.0)}
        assert calculate_composite_score(results, "Acme").confidence == "low"

    def test_no_results(self):
        composite = calculate_composite_score({}, "Acme")
        assert composite.overall == 0
        assert composite.confidence == "low"

    def test_errors_are_collected(self):
        results = full_results()
        results["contact_quality"] = SignalResult(score=0, confidence=0, error="Apollo unavailable")
        composite = calculate_composite_score(results, "Acme")

        assert composite.errors == ["contact_quality: Apollo unavailable"]
        assert "1 signal(s) failed" in composite.breakdown

    def test_error_score(self):
        composite = create_error_score("Acme", "boom")

        assert composite.overall == 0
        assert composite.confidence == "low"
        assert composite.breakdown == "Failed to calculate signals for Acme"
        assert composite.errors == ["boom"]


class TestExecuteSignals:
    """Tests for concurrent provider execution."""

    @pytest.mark.asyncio
    async def test_all_providers_run(self):
        results = await execute_signals(providers_for(full_results()), make_context(), timeout=5)
        assert set(results) == set(SIGNAL_WEIGHTS)

    @pytest.mark.asyncio
    async def test_failing_provider_is_isolated(self):
        providers = providers_for(full_results())
        providers[1] = StaticProvider("market_intelligence", error=RuntimeError("news API down"))

        with patch("partnermatch.services.signal_orchestrator.capture_exception") as mock_capture:
            results = await execute_signals(providers, make_context(), timeout=5)

        assert results["market_intelligence"].score == 0
        assert results["market_intelligence"].error == "news API down"
        assert results["job_skills_match"].score == 80
        mock_capture.assert_called_once()
        assert mock_capture.call_args.kwargs["context"]["provider"] == "market_intelligence"

    @pytest.mark.asyncio
    async def test_timeout_returns_partial_results(self):
        providers = providers_for(full_results())
        providers[3] = StaticProvider("contact_quality", hang=True)

        results = await execute_signals(providers, make_context(), timeout=0.05)

        assert "contact_quality" not in results
        assert len(results) == 3

    @pytest.mark.asyncio
    async def test_no_providers(self):
        assert await execute_signals([], make_context(), timeout=1) == {}

    @pytest.mark.asyncio
    async def test_calculate_company_signals(self):
        composite = await calculate_company_signals(make_context(), providers_for(full_results()), timeout=5)
        assert composite.overall == 67


class TestBatchSignals:
    """Tests for calculate_batch_signals."""

    @pytest.mark.asyncio
    async def test_batches_with_pause(self):
        companies = [{"id": f"c{i}", "name": f"Company {i}"} for i in range(7)]
        providers = providers_for(full_results())

        with patch("partnermatch.services.signal_orchestrator.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            scores = await calculate_batch_signals(
                companies, ["python"], "data", providers, batch_size=5, batch_delay_seconds=0.5
            )

        assert list(scores) == [f"c{i}" for i in range(7)]
        assert all(s.overall == 67 for s in scores.values())
        mock_sleep.assert_called_once_with(0.5)
        assert providers[0].calls == 7

    @pytest.mark.asyncio
    async def test_company_failure_yields_error_score(self):
        companies = [{"id": "c1", "name": "Acme"}]
        with patch(
            "partnermatch.services.signal_orchestrator.calculate_company_signals",
            new=AsyncMock(side_effect=RuntimeError("boom")),
        ), patch("partnermatch.services.signal_orchestrator.capture_exception"):
            scores = await calculate_batch_signals(companies, [], "data", [], batch_delay_seconds=0)

        assert scores["c1"].overall == 0
        assert scores["c1"].errors == ["boom"]
        assert scores["c1"].breakdown == "Failed to calculate signals for Acme"

    @pytest.mark.asyncio
    async def test_companies_without_id_are_skipped(self):
        companies = [{"name": "No Id"}, {"id": "c1", "name": "Acme"}, {"id": None, "name": "Null Id"}]
        providers = providers_for(full_results())

        scores = await calculate_batch_signals(companies, [], "data", providers, batch_delay_seconds=0)

        assert list(scores) == ["c1"]
        assert providers[0].calls == 1


class TestFilterAndRank:
    """Tests for the threshold fallback ranking."""

    @staticmethod
    def scored(values):
        companies = [{"id": f"c{i}", "name": f"Company {i}"} for i in range(len(values))]
        scores = {f"c{i}": replace(create_error_score("x", ""), overall=v) for i, v in enumerate(values)}
        return companies, scores

    def test_primary_threshold(self):
        companies, scores = self.scored([55, 90, 70, 10])
        ranked = filter_and_rank_companies(companies, scores)
        assert [c["id"] for c in ranked] == ["c1", "c2", "c0"]

    def test_falls_back_to_lower_threshold(self):
        companies, scores = self.scored([80, 60, 45, 35, 20])
        ranked = filter_and_rank_companies(companies, scores)
        assert [c["id"] for c in ranked] == ["c0", "c1", "c2", "c3"]

    def test_falls_back_to_top_n(self):
        companies, scores = self.scored([20, 10, 5, 1])
        ranked = filter_and_rank_companies(companies, scores)
        assert [c["id"] for c in ranked] == ["c0", "c1", "c2"]

    def test_capped_at_max_results(self):
        companies, scores = self.scored([90] * 20)
        assert len(filter_and_rank_companies(companies, scores)) == 15

    def test_custom_config_and_unscored(self):
        companies, scores = self.scored([90, 80])
        companies.append({"id": "unscored"})
        ranked = filter_and_rank_companies(companies, scores, FallbackConfig(max_results=1))
        assert [c["id"] for c in ranked] == ["c0"]

    def test_companies_without_id_are_not_ranked(self):
        companies, scores = self.scored([90, 80, 70])
        scores[""] = replace(create_error_score("x", ""), overall=99)
        companies += [{"name": "No Id"}, {"id": "", "name": "Empty Id"}]

        ranked = filter_and_rank_companies(companies, scores)

        assert [c.get("id") for c in ranked] == ["c0", "c1", "c2"]


class TestStorage:
    """Tests for storable column values."""

    def test_to_storable_signal_data(self):
        composite = calculate_composite_score(full_results(), "Acme")
        stored = to_storable_signal_data(composite)

        assert stored["skill_match_score"] == 80
        assert stored["market_signal_score"] == 60
        assert stored["composite_signal_score"] == 67
        assert stored["signal_confidence"] == "high"
        assert stored["signal_data"]["components"]["jobSkillsMatch"] == 80
        assert stored["signal_data"]["signalsDetected"]["hasFundingNews"] is True

    def test_stored_values_round_trip_through_scorer(self):
        """The stored weighted composite is authoritative; the local one is equal-weighted."""
        stored = to_storable_signal_data(calculate_composite_score(full_results(), "Acme"))
        signals = map_company_to_signals(stored)

        assert signals.composite.value == 67
        assert signals.composite_source == "upstream"
        assert signals.local_composite.value == 65.0

        evidence = build_signal_evidence(stored)
        assert evidence.market_intel[0].present is True
        assert evidence.contact_quality[0].present is True

    def test_prepare_signal_updates(self):
        updates = prepare_signal_updates({"c1": create_error_score("Acme", "boom")})
        assert updates[0]["id"] == "c1"
        assert updates[0]["updates"]["composite_signal_score"] == 0
