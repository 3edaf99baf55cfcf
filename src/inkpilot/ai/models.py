"""Model-family helpers: capability flags, request shaping and catalogue filtering."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

__all__ = [
    "ModelInfo",
    "is_reasoning_model",
    "model_supports_vision",
    "is_blocked_model",
    "family_key",
    "build_request_params",
    "select_latest_per_family",
]

_REASONING_RE = re.compile(r"^o\d")
_DATE_SUFFIX_RE = re.compile(r"-(\d{8}|\d{4})$")
_MINOR_SUFFIX_RE = re.compile(r"(-\d+)-\d+$")

# Retired or superseded models that the /models endpoint still advertises.
_BLOCKED_MODELS = frozenset({"gpt-4", "gpt-4-32k", "o1-mini", "o1-preview"})
_BLOCKED_PREFIXES: tuple[str, ...] = (
    "gpt-3.5",
    "gpt-4-",
    "text-",
    "claude-3-",
    "claude-3.5-",
    "o1-preview",
    "o1-mini",
)


@dataclass(slots=True, frozen=True)
class ModelInfo:
    """Catalogue entry returned by model discovery."""

    id: str
    supports_vision: bool
    family: str


def _normalize(model: str | None) -> str:
    return (model or "").strip().lower()


def is_reasoning_model(model: str | None) -> bool:
    """Return ``True`` for o-series reasoning models (``o1``, ``o3-mini``, ...)."""

    return bool(_REASONING_RE.match(_normalize(model)))


def model_supports_vision(model: str | None) -> bool:
    """Return ``True`` when the model accepts ``image_url`` content parts."""

    return not is_reasoning_model(model)


def is_blocked_model(model: str | None) -> bool:
    key = _normalize(model)
    if not key:
        return True
    if key in _BLOCKED_MODELS:
        return True
    return key.startswith(_BLOCKED_PREFIXES)


def family_key(model: str) -> str:
    """Collapse dated or minor-patch identifiers onto their family name.

    ``claude-3-5-sonnet-20241022`` -> ``claude-3-5-sonnet``,
    ``gpt-4-0613`` -> ``gpt-4``, ``claude-sonnet-4-5`` -> ``claude-sonnet-4``.
    """

    key = _DATE_SUFFIX_RE.sub("", model.strip())
    return _MINOR_SUFFIX_RE.sub(r"\1", key)


def build_request_params(
    model: str,
    *,
    temperature: float | None,
    max_output_tokens: int | None,
) -> Dict[str, Any]:
    """Return the sampling/length fields accepted by ``model``.

    Reasoning models reject ``temperature`` and name the output limit
    ``max_completion_tokens``; every other model takes ``temperature`` and
    ``max_tokens``.
    """

    params: Dict[str, Any] = {}
    if is_reasoning_model(model):
        if max_output_tokens is not None:
            params["max_completion_tokens"] = int(max_output_tokens)
        return params
    if temperature is not None:
        params["temperature"] = float(temperature)
    if max_output_tokens is not None:
        params["max_tokens"] = int(max_output_tokens)
    return params


def select_latest_per_family(model_ids: Iterable[str]) -> List[ModelInfo]:
    """Drop blocked models and keep the newest identifier of each family."""

    chosen: Dict[str, str] = {}
    for model_id in model_ids:
        if not model_id or is_blocked_model(model_id):
            continue
        family = family_key(model_id)
        current = chosen.get(family)
        if current is None or model_id > current:
            chosen[family] = model_id
    return [
        ModelInfo(id=model_id, supports_vision=model_supports_vision(model_id), family=family)
        for family, model_id in sorted(chosen.items())
    ]
