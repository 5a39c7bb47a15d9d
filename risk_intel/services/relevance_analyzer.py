from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable

import yaml

from risk_intel.config import SCANNER_MODES
from risk_intel.core.keywords import KEYWORD_CATEGORIES, KeywordSet, match_categories
from risk_intel.errors import ANALYZER_002_PROVIDER, AnalyzerError, AnalyzerProviderError
from risk_intel.services.model_client import ModelClient
from risk_intel.services.risk_register import RiskSummary


MATCHING_RULES_FILE = Path(__file__).resolve().parents[1] / "data" / "matching_rules.yaml"

SOURCE_MODEL = "model"
SOURCE_FALLBACK = "keyword-fallback"

FALLBACK_IMPACT = (
    "External event demonstrates industry/environmental trend that may affect organizational risk landscape"
)
FALLBACK_CONTROLS = ("Monitor for similar incidents", "Review affected risk controls", "Assess potential impact")

logger = logging.getLogger("risk_intel.analyzer")


@dataclass
class RelevanceJudgement:
    relevant: bool
    matched_risk_codes: list[str] = field(default_factory=list)
    confidence: float = 0.0
    likelihood_delta: int = 0
    reasoning: str = ""
    impact_assessment: str = ""
    suggested_controls: list[str] = field(default_factory=list)
    source: str = SOURCE_MODEL
    model_error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "relevant": self.relevant,
            "matched_risk_codes": list(self.matched_risk_codes),
            "confidence": self.confidence,
            "likelihood_delta": self.likelihood_delta,
            "reasoning": self.reasoning,
            "impact_assessment": self.impact_assessment,
            "suggested_controls": list(self.suggested_controls),
            "source": self.source,
        }


@dataclass(frozen=True)
class MatchingRules:
    category_markers: dict[str, tuple[str, ...]]
    prompt_rules: tuple[dict[str, Any], ...] = ()
    prompt_notes: tuple[str, ...] = ()


@lru_cache(maxsize=4)
def _load_rules_cached(path_str: str) -> MatchingRules:
    obj = yaml.safe_load(Path(path_str).read_text(encoding="utf-8")) or {}
    markers = {
        str(cat).lower(): tuple(str(m).upper() for m in (vals or []))
        for cat, vals in (obj.get("category_markers") or {}).items()
    }
    rules = tuple(r for r in (obj.get("prompt_rules") or []) if isinstance(r, dict))
    notes = tuple(str(n) for n in (obj.get("prompt_notes") or []) if str(n).strip())
    return MatchingRules(markers, rules, notes)


def load_matching_rules(path: Path | None = None) -> MatchingRules:
    return _load_rules_cached(str(path or MATCHING_RULES_FILE))


def _code_segments(risk_code: str) -> set[str]:
    return {seg for seg in re.split(r"[^A-Z0-9]+", str(risk_code or "").upper()) if seg}


def keyword_fallback(
    event: dict[str, Any],
    risks: list[RiskSummary],
    keyword_set: KeywordSet,
    rules: MatchingRules,
    *,
    confidence: float = 0.5,
) -> RelevanceJudgement:
    """
    Deterministic judgement from keyword hits. A risk is selected when its code
    carries a marker of a matched keyword category, or when its own category names
    that keyword category. Codes from all matched categories are unioned.
    """
    text = " ".join(str(event.get(k) or "") for k in ("title", "summary", "category"))
    hits = match_categories(text, keyword_set)
    codes: list[str] = []
    contributing: dict[str, list[str]] = {}
    for cat in KEYWORD_CATEGORIES:
        if cat not in hits:
            continue
        markers = set(rules.category_markers.get(cat, ()))
        for risk in risks:
            if (markers & _code_segments(risk.risk_code)) or risk.category.strip().lower() == cat:
                contributing.setdefault(cat, hits[cat])
                if risk.risk_code not in codes:
                    codes.append(risk.risk_code)
    if not codes:
        return RelevanceJudgement(
            relevant=False,
            reasoning="Keyword fallback: no keyword category maps to an active organizational risk.",
            source=SOURCE_FALLBACK,
        )
    mentions = "; ".join(f"{cat} [{', '.join(words)}]" for cat, words in contributing.items())
    return RelevanceJudgement(
        relevant=True,
        matched_risk_codes=codes,
        confidence=float(confidence),
        likelihood_delta=1,
        reasoning=f"Keyword-based match: event mentions {mentions}",
        impact_assessment=FALLBACK_IMPACT,
        suggested_controls=list(FALLBACK_CONTROLS),
        source=SOURCE_FALLBACK,
    )


def build_prompt(event: dict[str, Any], risks: list[RiskSummary], rules: MatchingRules) -> str:
    risk_lines = "\n".join(f"- {r.risk_code}: {r.risk_title}" for r in risks)
    rule_lines: list[str] = []
    for i, rule in enumerate(rules.prompt_rules, start=1):
        triggers = ", ".join(f'"{t}"' for t in rule.get("triggers") or [])
        markers = " or ".join(f'"{m}"' for m in rule.get("markers") or [])
        rule_lines.append(
            f"{i}. IF event title/category contains {triggers} -> MATCH ALL {markers} risks "
            f"with confidence {rule.get('confidence', 0.5)}"
        )
    for j, note in enumerate(rules.prompt_notes, start=len(rule_lines) + 1):
        rule_lines.append(f"{j}. {note}")
    summary = str(event.get("summary") or "")[:500]
    return (
        "You are a risk intelligence analyst. Decide whether this external event is relevant "
        "to any of the organization's risks.\n\n"
        f"EVENT:\nTitle: {event.get('title', '')}\nCategory: {event.get('category', '')}\n"
        f"Summary: {summary}\n\n"
        f"ORGANIZATION RISKS:\n{risk_lines}\n\n"
        f"MATCHING RULES:\n" + "\n".join(rule_lines) + "\n\n"
        "Only use risk codes from the list above. Respond with JSON only, no prose:\n"
        '{"relevant": true, "risk_codes": ["CODE"], "confidence": 0.5, "likelihood_change": 1, '
        '"reasoning": "Brief reason", "impact_assessment": "Brief impact", "suggested_controls": ["Control 1"]}\n'
    )


def _extract_json(text: str) -> dict[str, Any]:
    raw = str(text or "")
    m = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", raw, flags=re.S)
    if m:
        candidate = m.group(1)
    else:
        start, end = raw.find("{"), raw.rfind("}")
        if start < 0 or end <= start:
            raise AnalyzerProviderError(ANALYZER_002_PROVIDER, "no JSON object in response")
        candidate = raw[start : end + 1]
    try:
        obj = json.loads(candidate)
    except ValueError as e:
        raise AnalyzerProviderError(ANALYZER_002_PROVIDER, f"unparseable response: {e}") from e
    if not isinstance(obj, dict):
        raise AnalyzerProviderError(ANALYZER_002_PROVIDER, "response is not a JSON object")
    return obj


def parse_model_response(text: str, risks: list[RiskSummary]) -> RelevanceJudgement:
    obj = _extract_json(text)
    known = {r.risk_code.upper(): r.risk_code for r in risks}
    raw_codes = obj.get("risk_codes") or []
    if not isinstance(raw_codes, list):
        raise AnalyzerProviderError(ANALYZER_002_PROVIDER, f"risk_codes must be a list, got {type(raw_codes).__name__}")
    codes: list[str] = []
    for c in raw_codes:
        canon = known.get(str(c).strip().upper())
        if canon and canon not in codes:
            codes.append(canon)
    try:
        conf = float(obj.get("confidence", 0) or 0)
    except (TypeError, ValueError):
        conf = 0.0
    if 1.0 < conf <= 100.0:
        conf = conf / 100.0
    try:
        delta = int(round(float(obj.get("likelihood_change", 0) or 0)))
    except (TypeError, ValueError):
        delta = 0
    controls = obj.get("suggested_controls") or []
    return RelevanceJudgement(
        relevant=bool(obj.get("relevant")),
        matched_risk_codes=codes,
        confidence=max(0.0, min(1.0, conf)),
        likelihood_delta=max(-2, min(2, delta)),
        reasoning=str(obj.get("reasoning") or ""),
        impact_assessment=str(obj.get("impact_assessment") or ""),
        suggested_controls=[str(x) for x in controls if str(x).strip()] if isinstance(controls, list) else [],
        source=SOURCE_MODEL,
    )


class AnalysisThrottle:
    """Keeps consecutive model calls at least `delay_seconds` apart."""

    def __init__(
        self,
        delay_seconds: float = 1.0,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.delay_seconds = max(0.0, float(delay_seconds))
        self._sleep = sleep
        self._clock = clock
        self._last: float | None = None

    def wait(self) -> None:
        if self._last is not None and self.delay_seconds > 0:
            remaining = self.delay_seconds - (self._clock() - self._last)
            if remaining > 0:
                self._sleep(remaining)
        self._last = self._clock()


class RelevanceAnalyzer:
    def __init__(
        self,
        model_client: ModelClient | None,
        keyword_set: KeywordSet,
        *,
        rules: MatchingRules | None = None,
        scanner_mode: str = "ai",
        fallback_confidence: float = 0.5,
        throttle: AnalysisThrottle | None = None,
    ) -> None:
        if scanner_mode not in SCANNER_MODES:
            raise ValueError(f"unknown scanner_mode: {scanner_mode}")
        self.model_client = model_client
        self.keyword_set = keyword_set
        self.rules = rules or load_matching_rules()
        self.scanner_mode = scanner_mode
        self.fallback_confidence = fallback_confidence
        self.throttle = throttle or AnalysisThrottle(0.0)
        self.stats = {"model_calls": 0, "model_errors": 0, "fallbacks": 0}

    @property
    def uses_model(self) -> bool:
        return self.scanner_mode == "ai" and self.model_client is not None

    def _fallback(self, event: dict[str, Any], risks: list[RiskSummary]) -> RelevanceJudgement:
        self.stats["fallbacks"] += 1
        return keyword_fallback(event, risks, self.keyword_set, self.rules, confidence=self.fallback_confidence)

    def analyze(self, event: dict[str, Any], risks: list[RiskSummary]) -> RelevanceJudgement:
        if not self.uses_model:
            return self._fallback(event, risks)

        model_judgement: RelevanceJudgement | None = None
        error = ""
        self.throttle.wait()
        self.stats["model_calls"] += 1
        try:
            model_judgement = parse_model_response(self.model_client.complete(build_prompt(event, risks, self.rules)), risks)
        except AnalyzerError as e:
            self.stats["model_errors"] += 1
            error = str(e)
            logger.warning("model judgement unavailable event_id=%s err=%s", event.get("id"), e)
        except Exception as e:
            self.stats["model_errors"] += 1
            error = str(AnalyzerProviderError(ANALYZER_002_PROVIDER, f"{type(e).__name__}: {e}"))
            logger.warning("model client failed event_id=%s err=%s: %s", event.get("id"), type(e).__name__, e)

        if model_judgement is not None and model_judgement.relevant and model_judgement.matched_risk_codes:
            return model_judgement

        fallback = self._fallback(event, risks)
        fallback.model_error = error
        if not fallback.relevant and model_judgement is not None:
            return model_judgement
        return fallback
