# margin_leakage/analysis/margin_steps.py
"""Definitions of the five margin analysis steps: parameters, prompts, reply checks and persistence."""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.config import get_step_config
from ..data.file_processing import to_number
from ..services.storage import ANALYSES_COLLECTION, PRICING_COLLECTION
from ..utils.helpers import build_step_overrides
from ..utils.json_repair import extract_first_json_object, strip_code_fences
from . import prompts
from .fallbacks import FALLBACKS

STEP_ORDER = ["pricing", "costs", "leakage", "segments", "recommendations"]


def _has_products(parsed: Dict[str, Any]) -> bool:
    return bool(parsed.get("total_products"))


def _has_leakage_shape(parsed: Dict[str, Any]) -> bool:
    instances = parsed.get("leakage_instances")
    if isinstance(instances, bool):
        return False
    return to_number(instances) is not None and isinstance(parsed.get("top_leaks"), list)


@dataclass(frozen=True)
class MarginStep:
    name: str
    label: str
    param_keys: Tuple[str, ...]
    prompt_builder: Callable[..., str]
    collection: str
    response_step: Optional[str] = None
    validator: Optional[Callable[[Dict[str, Any]], bool]] = None
    failure_message: str = ""

    @property
    def strict(self) -> bool:
        """Strict steps fail the request when the reply is unusable; others fall back to computed results."""
        return self.validator is not None

    @property
    def fallback(self) -> Optional[Callable[..., Dict[str, Any]]]:
        return FALLBACKS.get(self.name)


MARGIN_STEPS: Dict[str, MarginStep] = {
    "pricing": MarginStep(
        name="pricing",
        label="Analyzing pricing structure",
        param_keys=("analyze_fields", "price_thresholds", "customPrompt"),
        prompt_builder=prompts.pricing_prompt,
        collection=PRICING_COLLECTION,
        validator=_has_products,
        failure_message="AI pricing analysis failed",
    ),
    "costs": MarginStep(
        name="costs",
        label="Calculating cost margins",
        param_keys=("cost_fields", "margin_thresholds"),
        prompt_builder=prompts.costs_prompt,
        collection=ANALYSES_COLLECTION,
        response_step="cost_analysis",
    ),
    "leakage": MarginStep(
        name="leakage",
        label="Identifying margin leakage",
        param_keys=("leakage_rules", "priority_threshold"),
        prompt_builder=prompts.leakage_prompt,
        collection=ANALYSES_COLLECTION,
        response_step="leakage_analysis",
        validator=_has_leakage_shape,
        failure_message="AI analysis failed to return valid leakage data",
    ),
    "segments": MarginStep(
        name="segments",
        label="Analyzing customer segments",
        param_keys=("segment_fields", "analysis_type"),
        prompt_builder=prompts.segments_prompt,
        collection=ANALYSES_COLLECTION,
        response_step="segment_analysis",
    ),
    "recommendations": MarginStep(
        name="recommendations",
        label="Generating recommendations",
        param_keys=("recommendation_types",),
        prompt_builder=prompts.recommendations_prompt,
        collection=ANALYSES_COLLECTION,
        response_step="recommendations",
    ),
}


def get_step(name: str) -> Optional[MarginStep]:
    return MARGIN_STEPS.get(name)


def resolve_step_params(step: MarginStep, body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Step defaults overridden by any non-null parameter in the request body."""
    defaults = get_step_config(step.name)
    params = {key: defaults.get(key) for key in step.param_keys}
    params.update(build_step_overrides(body, list(step.param_keys)))
    params["model"] = defaults["model"]
    params["sample_rows"] = int(defaults["sample_rows"])
    return params


def parse_step_reply(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """JSON object from a model reply, tolerating fences, prose and common syntax slips."""
    if not raw:
        return None
    return extract_first_json_object(strip_code_fences(raw)) or extract_first_json_object(raw)


def build_step_prompt(step: MarginStep, columns: List[str], rows: List[Dict[str, str]],
                      params: Dict[str, Any]) -> Tuple[str, List[Dict[str, str]]]:
    sample = rows[:params["sample_rows"]]
    return step.prompt_builder(columns, sample, len(rows), params), sample
