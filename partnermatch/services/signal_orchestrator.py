"""
Signal orchestration for company enrichment.

Runs the signal providers (job skills match, market intelligence, department
fit, contact quality) for a company concurrently, combines their results into
a weighted composite and prepares the column values stored on the company.
Those stored values are what `services.signals` later scores and explains.

Providers are plain objects implementing `SignalProvider`; each one usually
wraps an external API behind a circuit breaker and retry policy.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from partnermatch.core.config import settings
from partnermatch.core.errors import capture_exception
from partnermatch.core.logging_config import get_logger
from partnermatch.services.signals import (
    Confidence,
    JobPosting,
    SignalComponents,
    SignalDetection,
    parse_job_postings,
)

logger = get_logger(__name__)

SIGNAL_WEIGHTS: Dict[str, float] = {
    "job_skills_match": 0.35,
    "market_intelligence": 0.25,
    "department_fit": 0.20,
    "contact_quality": 0.20,
}

SIGNAL_LABELS: Dict[str, str] = {
    "job_skills_match": "Skills Match",
    "market_intelligence": "Market Intelligence",
    "department_fit": "Department Fit",
    "contact_quality": "Contact Quality",
}


@dataclass
class SignalResult:
    score: float  # 0-100
    confidence: float  # 0-1
    signals: List[str] = field(default_factory=list)
    raw_data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class SignalContext:
    company: Mapping[str, Any]
    syllabus_skills: List[str]
    syllabus_domain: str
    job_postings: List[JobPosting] = field(default_factory=list)

    @property
    def company_id(self) -> str:
        return str(self.company.get("id") or "")

    @property
    def company_name(self) -> str:
        return str(self.company.get("name") or "Unknown company")


class SignalProvider(Protocol):
    name: str  # Key in SIGNAL_WEIGHTS
    weight: float

    async def calculate(self, context: SignalContext) -> SignalResult: ...


@dataclass
class CompositeScore:
    overall: int
    confidence: Confidence
    components: SignalComponents
    signals_detected: SignalDetection
    breakdown: str
    errors: List[str] = field(default_factory=list)

    def to_signal_data(self) -> Dict[str, Any]:
        """The `signal_data` payload, camelCase as stored."""
        return {
            "overall": self.overall,
            "confidence": self.confidence,
            "components": self.components.model_dump(by_alias=True),
            "signalsDetected": self.signals_detected.model_dump(by_alias=True),
            "breakdown": self.breakdown,
            "errors": list(self.errors),
        }


def _round_half_up(value: float) -> int:
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def _raw_flag(result: Optional[SignalResult], *keys: str) -> bool:
    if result is None:
        return False
    return any(result.raw_data.get(key) is True for key in keys)


def _company_id(company: Mapping[str, Any]) -> str:
    return str(company.get("id") or "")


def _score(result: Optional[SignalResult]) -> float:
    return result.score if result else 0.0


def _confidence_tier(mean_confidence: float) -> Confidence:
    if mean_confidence > 0.7:
        return "high"
    if mean_confidence > 0.4:
        return "medium"
    return "low"


def calculate_composite_score(results: Mapping[str, SignalResult], company_name: str) -> CompositeScore:
    """
    Combine provider results into the weighted composite.

    Missing providers count as 0 for both score and confidence. Confidence is
    the mean over the four signal slots (>0.7 high, >0.4 medium, else low).
    """
    components = SignalComponents(
        job_skills_match=_score(results.get("job_skills_match")),
        market_intelligence=_score(results.get("market_intelligence")),
        department_fit=_score(results.get("department_fit")),
        contact_quality=_score(results.get("contact_quality")),
    )
    component_values = {
        "job_skills_match": components.job_skills_match,
        "market_intelligence": components.market_intelligence,
        "department_fit": components.department_fit,
        "contact_quality": components.contact_quality,
    }

    overall = _round_half_up(sum(component_values[key] * weight for key, weight in SIGNAL_WEIGHTS.items()))

    # Mean over the fixed slots; a missing provider contributes 0
    confidences = [results[key].confidence if key in results else 0.0 for key in SIGNAL_WEIGHTS]
    mean_confidence = sum(confidences) / len(confidences)

    market = results.get("market_intelligence")
    department = results.get("department_fit")
    technology_match = department.raw_data.get("technologyMatchScore") if department else None
    detected = SignalDetection(
        has_active_job_postings=components.job_skills_match > 30,
        has_funding_news=_raw_flag(market, "hasFundingNews", "has_funding_news"),
        has_hiring_news=_raw_flag(market, "hasHiringNews", "has_hiring_news"),
        has_department_growth=components.department_fit > 50,
        has_technology_match=isinstance(technology_match, (int, float)) and technology_match > 0.5,
        has_decision_makers=components.contact_quality > 40,
    )

    errors = [f"{name}: {r.error}" for name, r in results.items() if r.error]

    lines = [f"Signal Analysis for {company_name}:", ""]
    for key, weight in SIGNAL_WEIGHTS.items():
        lines.append(f"• {SIGNAL_LABELS[key]}: {component_values[key]:g}/100 (weight: {weight * 100:.0f}%)")

    positives = [
        label
        for flag, label in (
            (detected.has_active_job_postings, "active hiring"),
            (detected.has_funding_news, "recent funding"),
            (detected.has_hiring_news, "hiring news"),
            (detected.has_department_growth, "department growth"),
            (detected.has_technology_match, "tech alignment"),
            (detected.has_decision_makers, "reachable leaders"),
        )
        if flag
    ]
    if positives:
        lines += ["", f"• Positive signals: {', '.join(positives)}"]
    if errors:
        lines += ["", f"• Issues: {len(errors)} signal(s) failed"]

    return CompositeScore(
        overall=overall,
        confidence=_confidence_tier(mean_confidence),
        components=components,
        signals_detected=detected,
        breakdown="\n".join(lines),
        errors=errors,
    )


def create_error_score(company_name: str, error: str) -> CompositeScore:
    """All-zero score for a company whose signal run failed outright."""
    return CompositeScore(
        overall=0,
        confidence="low",
        components=SignalComponents(),
        signals_detected=SignalDetection(),
        breakdown=f"Failed to calculate signals for {company_name}",
        errors=[error],
    )


async def execute_signals(
    providers: Sequence[SignalProvider],
    context: SignalContext,
    timeout: Optional[float] = None,
) -> Dict[str, SignalResult]:
    """
    Run all providers concurrently.

    A provider that raises yields a zero-score result carrying the error.
    Providers still running at `timeout` seconds are cancelled and left out;
    the results that did finish are returned.
    """
    timeout = settings.SIGNAL_TIMEOUT_SECONDS if timeout is None else timeout

    async def run(provider: SignalProvider) -> SignalResult:
        try:
            return await provider.calculate(context)
        except Exception as e:
            capture_exception(e, context={"provider": provider.name, "company": context.company_name})
            return SignalResult(
                score=0,
                confidence=0,
                signals=["Signal calculation failed"],
                error=str(e) or type(e).__name__,
            )

    if not providers:
        return {}

    tasks = {provider.name: asyncio.ensure_future(run(provider)) for provider in providers}
    done, pending = await asyncio.wait(tasks.values(), timeout=timeout)

    if pending:
        timed_out = [name for name, task in tasks.items() if task in pending]
        logger.warning(
            "Signal providers timed out",
            company=context.company_name,
            timeout_seconds=timeout,
            providers=timed_out,
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    return {name: task.result() for name, task in tasks.items() if task in done}


async def calculate_company_signals(
    context: SignalContext,
    providers: Sequence[SignalProvider],
    timeout: Optional[float] = None,
) -> CompositeScore:
    start = time.perf_counter()
    logger.info("Calculating signals", company=context.company_name, providers=len(providers))

    results = await execute_signals(providers, context, timeout=timeout)
    composite = calculate_composite_score(results, context.company_name)

    logger.info(
        "Signals calculated",
        company=context.company_name,
        overall=composite.overall,
        confidence=composite.confidence,
        errors=len(composite.errors),
        duration_ms=round((time.perf_counter() - start) * 1000),
    )
    return composite


async def calculate_batch_signals(
    companies: Sequence[Mapping[str, Any]],
    syllabus_skills: List[str],
    syllabus_domain: str,
    providers: Sequence[SignalProvider],
    batch_size: Optional[int] = None,
    batch_delay_seconds: Optional[float] = None,
) -> Dict[str, CompositeScore]:
    """
    Score many companies, `batch_size` at a time, pausing between batches.

    Returns composites keyed by company id; companies without an id are
    skipped. A company whose run fails gets an error score instead of
    aborting the batch.
    """
    batch_size = batch_size or settings.SIGNAL_BATCH_SIZE
    delay = settings.SIGNAL_BATCH_DELAY_SECONDS if batch_delay_seconds is None else batch_delay_seconds

    async def score_one(company: Mapping[str, Any]) -> CompositeScore:
        context = SignalContext(
            company=company,
            syllabus_skills=syllabus_skills,
            syllabus_domain=syllabus_domain,
            job_postings=parse_job_postings(company.get("job_postings")),
        )
        try:
            return await calculate_company_signals(context, providers)
        except Exception as e:
            capture_exception(e, context={"company": context.company_name})
            return create_error_score(context.company_name, str(e) or type(e).__name__)

    skipped = [c for c in companies if not _company_id(c)]
    if skipped:
        logger.warning("Skipping companies without an id", count=len(skipped))
        companies = [c for c in companies if _company_id(c)]

    scores: Dict[str, CompositeScore] = {}
    for start in range(0, len(companies), batch_size):
        batch = companies[start : start + batch_size]
        composites = await asyncio.gather(*(score_one(c) for c in batch))
        for company, composite in zip(batch, composites):
            scores[_company_id(company)] = composite

        if start + batch_size < len(companies) and delay > 0:
            await asyncio.sleep(delay)

    logger.info("Batch signals calculated", companies=len(companies), batch_size=batch_size)
    return scores


@dataclass(frozen=True)
class FallbackConfig:
    primary_threshold: int = 50
    fallback_threshold: int = 30
    min_results: int = 3
    max_results: int = 15


DEFAULT_FALLBACK_CONFIG = FallbackConfig()


def filter_and_rank_companies(
    companies: Sequence[Mapping[str, Any]],
    scores: Mapping[str, CompositeScore],
    config: FallbackConfig = DEFAULT_FALLBACK_CONFIG,
) -> List[Mapping[str, Any]]:
    """
    Rank scored companies, relaxing the threshold when too few qualify.

    Tries `primary_threshold`, then `fallback_threshold`, then simply the top
    `min_results`. At most `max_results` companies are returned, best first.
    """
    ranked = sorted(
        ((c, scores[_company_id(c)]) for c in companies if _company_id(c) and _company_id(c) in scores),
        key=lambda pair: pair[1].overall,
        reverse=True,
    )

    selected = [c for c, s in ranked if s.overall >= config.primary_threshold]
    if len(selected) < config.min_results:
        logger.info(
            "Too few companies above primary threshold, relaxing",
            qualified=len(selected),
            primary_threshold=config.primary_threshold,
            fallback_threshold=config.fallback_threshold,
        )
        selected = [c for c, s in ranked if s.overall >= config.fallback_threshold]
    if len(selected) < config.min_results:
        selected = [c for c, _ in ranked[: config.min_results]]

    return selected[: config.max_results]


def to_storable_signal_data(composite: CompositeScore) -> Dict[str, Any]:
    """Column values for a company row."""
    return {
        "skill_match_score": composite.components.job_skills_match,
        "market_signal_score": composite.components.market_intelligence,
        "department_fit_score": composite.components.department_fit,
        "contact_quality_score": composite.components.contact_quality,
        "composite_signal_score": composite.overall,
        "signal_confidence": composite.confidence,
        "signal_data": composite.to_signal_data(),
    }


def prepare_signal_updates(scores: Mapping[str, CompositeScore]) -> List[Dict[str, Any]]:
    return [{"id": company_id, "updates": to_storable_signal_data(c)} for company_id, c in scores.items()]
