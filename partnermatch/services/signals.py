"""
Company signal scoring.

Turns the per-dimension scores stored for a company (plus the evidence the
enrichment pipeline attached to it) into four 0-100 sub-scores, a composite,
their confidence tiers, and an evidence report that justifies the numbers to
an instructor or employer.

Input is accepted in every shape the enrichment pipeline has produced:
snake_case column names or camelCase keys, JSON strings, nulls and junk
values. Missing evidence lowers confidence; it never raises.

Two composites exist side by side. The enrichment pipeline stores a weighted
composite (see `signal_orchestrator.SIGNAL_WEIGHTS`); when present it is
authoritative and reported as `composite`. The equal-weight composite of the
four sub-scores is always computed as `local_composite`, so callers can show
or compare both.
"""

import json
import math
from dataclasses import dataclass
from typing import Any, Literal, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from partnermatch.core.logging_config import get_logger

logger = get_logger(__name__)

Confidence = Literal["low", "medium", "high"]
CompositeSource = Literal["upstream", "local"]

MEDIUM_CONFIDENCE_FROM = 30.0
HIGH_CONFIDENCE_FROM = 60.0
EQUAL_WEIGHT = 0.25

# Where each piece of evidence comes from (shown next to the evidence item)
JOB_POSTINGS_SOURCE = "Apollo Job Postings API"
SKILL_MATCH_SOURCE = "O*NET + Syllabus Analysis"
MARKET_INTEL_SOURCE = "Apollo News API"
DEPARTMENT_SOURCE = "Apollo Organization API"
TECH_STACK_SOURCE = "Apollo Technology Stack"
CONTACT_SOURCE = "Apollo People API"


def get_confidence(score: Optional[float]) -> Confidence:
    """Threshold classifier: missing/0/<30 low, 30-59 medium, >=60 high."""
    if not score or score < MEDIUM_CONFIDENCE_FROM:
        return "low"
    if score < HIGH_CONFIDENCE_FROM:
        return "medium"
    return "high"


def equal_weight_composite(
    skill_match: float, market_intel: float, department_fit: float, contact_quality: float
) -> float:
    """25% per sub-score, rounded to one decimal."""
    total = (skill_match + market_intel + department_fit + contact_quality) * EQUAL_WEIGHT
    return round(total, 1)


def score_label(score: float, max_score: float = 100.0) -> str:
    """Display label for a single signal card."""
    pct = min(score / max_score * 100, 100) if max_score else 0
    if pct >= 70:
        return "Strong"
    if pct >= 40:
        return "Moderate"
    if pct > 0:
        return "Limited"
    return "No Data"


def _to_score(value: Any) -> Optional[float]:
    """Coerce to a float clamped to 0-100; None when missing or unparseable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return min(100.0, max(0.0, number))


def _to_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _load_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError:
            logger.warning("Could not parse JSON signal payload", preview=str(value)[:80])
            return None
    return value


def _aliases(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class _LenientModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class SignalDetection(_LenientModel):
    """Which kinds of evidence the enrichment pipeline found."""

    has_active_job_postings: bool = Field(
        default=False,
        validation_alias=_aliases("has_active_job_postings", "hasActiveJobPostings"),
        serialization_alias="hasActiveJobPostings",
    )
    has_funding_news: bool = Field(
        default=False,
        validation_alias=_aliases("has_funding_news", "hasFundingNews"),
        serialization_alias="hasFundingNews",
    )
    has_hiring_news: bool = Field(
        default=False,
        validation_alias=_aliases("has_hiring_news", "hasHiringNews"),
        serialization_alias="hasHiringNews",
    )
    has_department_growth: bool = Field(
        default=False,
        validation_alias=_aliases("has_department_growth", "hasDepartmentGrowth"),
        serialization_alias="hasDepartmentGrowth",
    )
    has_technology_match: bool = Field(
        default=False,
        validation_alias=_aliases("has_technology_match", "hasTechnologyMatch"),
        serialization_alias="hasTechnologyMatch",
    )
    has_decision_makers: bool = Field(
        default=False,
        validation_alias=_aliases("has_decision_makers", "hasDecisionMakers"),
        serialization_alias="hasDecisionMakers",
    )

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return _to_flag(value)


class SignalComponents(_LenientModel):
    """Per-dimension scores as computed by the enrichment pipeline."""

    job_skills_match: float = Field(
        default=0.0,
        validation_alias=_aliases("job_skills_match", "jobSkillsMatch"),
        serialization_alias="jobSkillsMatch",
    )
    market_intelligence: float = Field(
        default=0.0,
        validation_alias=_aliases("market_intelligence", "marketIntelligence"),
        serialization_alias="marketIntelligence",
    )
    department_fit: float = Field(
        default=0.0,
        validation_alias=_aliases("department_fit", "departmentFit"),
        serialization_alias="departmentFit",
    )
    contact_quality: float = Field(
        default=0.0,
        validation_alias=_aliases("contact_quality", "contactQuality"),
        serialization_alias="contactQuality",
    )

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_score(cls, value: Any) -> float:
        return _to_score(value) or 0.0


class SignalData(_LenientModel):
    """The `signal_data` payload stored next to a company's scores."""

    overall: Optional[float] = None
    confidence: Optional[str] = None
    components: Optional[SignalComponents] = None
    signals_detected: SignalDetection = Field(
        default_factory=SignalDetection,
        validation_alias=_aliases("signals_detected", "signalsDetected"),
    )
    breakdown: Optional[str] = None
    errors: list[str] = Field(default_factory=list)

    @field_validator("overall", mode="before")
    @classmethod
    def _coerce_overall(cls, value: Any) -> Optional[float]:
        return _to_score(value)

    @field_validator("confidence", "breakdown", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)

    @field_validator("components", mode="before")
    @classmethod
    def _coerce_components(cls, value: Any) -> Any:
        value = _load_json(value)
        return value if isinstance(value, (Mapping, SignalComponents)) else None

    @field_validator("signals_detected", mode="before")
    @classmethod
    def _coerce_detected(cls, value: Any) -> Any:
        value = _load_json(value)
        return value if isinstance(value, (Mapping, SignalDetection)) else {}

    @field_validator("errors", mode="before")
    @classmethod
    def _coerce_errors(cls, value: Any) -> list[str]:
        if not isinstance(value, (list, tuple)):
            return []
        return [str(e) for e in value if e]


class JobPosting(_LenientModel):
    id: str = ""
    title: str = "Unknown Role"
    url: Optional[str] = None
    description: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value) if value else ""

    @field_validator("title", mode="before")
    @classmethod
    def _coerce_title(cls, value: Any) -> str:
        return str(value) if value else "Unknown Role"

    @field_validator("url", "description", mode="before")
    @classmethod
    def _coerce_optional(cls, value: Any) -> Optional[str]:
        return str(value) if value else None


def parse_signal_data(raw: Any) -> Optional[SignalData]:
    """Parse a `signal_data` value (dict or JSON string); None if unusable."""
    if isinstance(raw, SignalData):
        return raw
    value = _load_json(raw)
    if not isinstance(value, Mapping):
        return None
    try:
        return SignalData.model_validate(dict(value))
    except ValidationError as e:
        logger.warning("Discarding invalid signal_data", error=str(e))
        return None


def parse_job_postings(raw: Any) -> list[JobPosting]:
    """Parse a `job_postings` value (list or JSON string); malformed entries are skipped."""
    value = _load_json(raw)
    if not isinstance(value, (list, tuple)):
        return []
    postings = []
    for item in value:
        if isinstance(item, JobPosting):
            postings.append(item)
        elif isinstance(item, Mapping):
            postings.append(JobPosting.model_validate(dict(item)))
    return postings


class CompanySignalInput(_LenientModel):
    """Normalized scorer input; every field is optional."""

    skill_match_score: Optional[float] = Field(
        default=None, validation_alias=_aliases("skill_match_score", "skillMatch")
    )
    market_signal_score: Optional[float] = Field(
        default=None, validation_alias=_aliases("market_signal_score", "marketIntel")
    )
    department_fit_score: Optional[float] = Field(
        default=None, validation_alias=_aliases("department_fit_score", "departmentFit")
    )
    contact_quality_score: Optional[float] = Field(
        default=None, validation_alias=_aliases("contact_quality_score", "contactQuality")
    )
    composite_signal_score: Optional[float] = Field(
        default=None, validation_alias=_aliases("composite_signal_score", "composite")
    )
    signal_data: Optional[SignalData] = Field(
        default=None, validation_alias=_aliases("signal_data", "signalData")
    )
    job_postings: list[JobPosting] = Field(
        default_factory=list, validation_alias=_aliases("job_postings", "jobPostings")
    )
    job_postings_count: Optional[int] = Field(
        default=None, validation_alias=_aliases("job_postings_count", "jobPostingsCount")
    )
    matching_skills: list[str] = Field(
        default_factory=list, validation_alias=_aliases("matching_skills", "matchingSkills")
    )

    @field_validator(
        "skill_match_score",
        "market_signal_score",
        "department_fit_score",
        "contact_quality_score",
        "composite_signal_score",
        mode="before",
    )
    @classmethod
    def _coerce_score(cls, value: Any) -> Optional[float]:
        return _to_score(value)

    @field_validator("signal_data", mode="before")
    @classmethod
    def _coerce_signal_data(cls, value: Any) -> Optional[SignalData]:
        return parse_signal_data(value)

    @field_validator("job_postings", mode="before")
    @classmethod
    def _coerce_job_postings(cls, value: Any) -> list[JobPosting]:
        return parse_job_postings(value)

    @field_validator("job_postings_count", mode="before")
    @classmethod
    def _coerce_count(cls, value: Any) -> Optional[int]:
        if value is None or isinstance(value, bool):
            return None
        try:
            count = int(value)
        except (TypeError, ValueError):
            return None
        return count if count >= 0 else None

    @field_validator("matching_skills", mode="before")
    @classmethod
    def _coerce_skills(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            if not value.lstrip().startswith("["):
                return [value] if value.strip() else []
            value = _load_json(value)
        if not isinstance(value, (list, tuple)):
            return []
        return [str(s) for s in value if s]

    @property
    def detected(self) -> SignalDetection:
        return self.signal_data.signals_detected if self.signal_data else SignalDetection()

    @property
    def postings_count(self) -> int:
        if self.job_postings_count is not None:
            return self.job_postings_count
        return len(self.job_postings)

    @property
    def components(self) -> SignalComponents:
        """Pipeline component scores when stored, else the column scores."""
        if self.signal_data and self.signal_data.components:
            return self.signal_data.components
        return SignalComponents(
            job_skills_match=self.skill_match_score or 0.0,
            market_intelligence=self.market_signal_score or 0.0,
            department_fit=self.department_fit_score or 0.0,
            contact_quality=self.contact_quality_score or 0.0,
        )

    @property
    def upstream_composite(self) -> Optional[float]:
        if self.composite_signal_score is not None:
            return self.composite_signal_score
        if self.signal_data:
            return self.signal_data.overall
        return None


def normalize_company_signals(company: Any) -> CompanySignalInput:
    """Validate a raw company record at the boundary. Never raises."""
    if isinstance(company, CompanySignalInput):
        return company
    if isinstance(company, BaseModel):
        company = company.model_dump()
    if not isinstance(company, Mapping):
        logger.warning("Unexpected company signal payload", payload_type=type(company).__name__)
        return CompanySignalInput()
    try:
        return CompanySignalInput.model_validate(dict(company))
    except ValidationError as e:
        logger.warning("Invalid company signal payload", error=str(e))
        return CompanySignalInput()


@dataclass(frozen=True)
class SignalScore:
    value: float
    confidence: Confidence
    max_value: float = 100.0

    @classmethod
    def of(cls, value: Optional[float]) -> "SignalScore":
        return cls(value=value or 0.0, confidence=get_confidence(value))


@dataclass(frozen=True)
class CompanySignals:
    skill_match: SignalScore
    market_intel: SignalScore
    department_fit: SignalScore
    contact_quality: SignalScore
    composite: SignalScore  # Upstream composite when stored, else local_composite
    local_composite: SignalScore  # Always the equal-weight composite
    composite_source: CompositeSource

    def to_dict(self) -> dict[str, Any]:
        def score(s: SignalScore) -> dict[str, Any]:
            return {"value": s.value, "max_value": s.max_value, "confidence": s.confidence}

        return {
            "skill_match": score(self.skill_match),
            "market_intel": score(self.market_intel),
            "department_fit": score(self.department_fit),
            "contact_quality": score(self.contact_quality),
            "composite": score(self.composite),
            "local_composite": score(self.local_composite),
            "composite_source": self.composite_source,
        }


def map_company_to_signals(company: Any) -> CompanySignals:
    """Build the five signal scores for a company record."""
    data = normalize_company_signals(company)

    skill_match = data.skill_match_score or 0.0
    market_intel = data.market_signal_score or 0.0
    department_fit = data.department_fit_score or 0.0
    contact_quality = data.contact_quality_score or 0.0

    local = SignalScore.of(equal_weight_composite(skill_match, market_intel, department_fit, contact_quality))
    upstream = data.upstream_composite

    return CompanySignals(
        skill_match=SignalScore.of(data.skill_match_score),
        market_intel=SignalScore.of(data.market_signal_score),
        department_fit=SignalScore.of(data.department_fit_score),
        contact_quality=SignalScore.of(data.contact_quality_score),
        composite=SignalScore.of(upstream) if upstream is not None else local,
        local_composite=local,
        composite_source="upstream" if upstream is not None else "local",
    )


@dataclass(frozen=True)
class EvidenceItem:
    label: str
    present: bool
    detail: Optional[str] = None
    source: Optional[str] = None


@dataclass(frozen=True)
class SignalEvidence:
    skill_match: tuple[EvidenceItem, ...]
    market_intel: tuple[EvidenceItem, ...]
    department_fit: tuple[EvidenceItem, ...]
    contact_quality: tuple[EvidenceItem, ...]

    @property
    def items(self) -> tuple[EvidenceItem, ...]:
        return self.skill_match + self.market_intel + self.department_fit + self.contact_quality

    @property
    def present_count(self) -> int:
        return sum(1 for item in self.items if item.present)

    @property
    def total_count(self) -> int:
        return len(self.items)

    @property
    def validation_percentage(self) -> int:
        """Share of evidence checks that are present, 0-100."""
        if not self.total_count:
            return 0
        return round(self.present_count / self.total_count * 100)

    @property
    def strength(self) -> str:
        if self.present_count >= 8:
            return "Strong"
        if self.present_count >= 4:
            return "Moderate"
        return "Limited"


def build_signal_evidence(company: Any) -> SignalEvidence:
    """Assemble the evidence checks behind each of the four sub-scores."""
    data = normalize_company_signals(company)
    detected = data.detected
    components = data.components
    postings = data.postings_count
    skills = data.matching_skills

    skill_match = (
        EvidenceItem(
            "Job postings analyzed",
            detected.has_active_job_postings or postings > 0,
            f"{postings} positions" if postings > 0 else "No postings available",
            JOB_POSTINGS_SOURCE,
        ),
        EvidenceItem(
            "Skills matched to syllabus",
            bool(skills),
            f"{len(skills)} skill overlaps" if skills else "No direct matches found",
            SKILL_MATCH_SOURCE,
        ),
        EvidenceItem("Technology alignment", detected.has_technology_match, source=TECH_STACK_SOURCE),
    )

    market_intel = (
        EvidenceItem("Funding activity", detected.has_funding_news, source=MARKET_INTEL_SOURCE),
        EvidenceItem("Hiring velocity", detected.has_hiring_news or postings >= 3, source=MARKET_INTEL_SOURCE),
        EvidenceItem("Department growth", detected.has_department_growth, source=DEPARTMENT_SOURCE),
    )

    department_fit = (
        EvidenceItem("Technical team size", components.department_fit > 20, source=DEPARTMENT_SOURCE),
        EvidenceItem("Growth trajectory", detected.has_department_growth, source=DEPARTMENT_SOURCE),
        EvidenceItem("Tech stack relevance", detected.has_technology_match, source=TECH_STACK_SOURCE),
    )

    contact_quality = (
        EvidenceItem("Decision-maker found", detected.has_decision_makers, source=CONTACT_SOURCE),
        EvidenceItem("Email status verified", components.contact_quality > 50, source=CONTACT_SOURCE),
        EvidenceItem("Title relevance", components.contact_quality > 30, source=CONTACT_SOURCE),
    )

    return SignalEvidence(
        skill_match=skill_match,
        market_intel=market_intel,
        department_fit=department_fit,
        contact_quality=contact_quality,
    )


@dataclass(frozen=True)
class SignalReport:
    signals: CompanySignals
    evidence: SignalEvidence

    @property
    def validation_percentage(self) -> int:
        return self.evidence.validation_percentage


def score_company(company: Any) -> SignalReport:
    """Scores plus evidence for one company/project pair."""
    data = normalize_company_signals(company)
    report = SignalReport(signals=map_company_to_signals(data), evidence=build_signal_evidence(data))
    logger.debug(
        "Company scored",
        composite=report.signals.composite.value,
        composite_source=report.signals.composite_source,
        validation_percentage=report.validation_percentage,
    )
    return report
