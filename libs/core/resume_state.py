"""Shared resume state and the rules for merging agent-proposed updates.

Agents send partial updates that are often wrapped in prose or code fences,
or are slightly malformed JSON. ``ResumeStateStore.apply_update`` repairs
what it can, validates the result and merges it. It never raises: a rejected
update is logged and reported back as a ``MergeReport``.
"""

from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from jsonschema import Draft202012Validator

from libs.core import logging as core_logging

LOGGER = core_logging.get_logger("resume_state")

MARKDOWN_VARIANT = "markdown"
STRUCTURED_VARIANT = "structured"
VARIANTS = (MARKDOWN_VARIANT, STRUCTURED_VARIANT)

MARKDOWN_KEY = "markdownResume"

MARKDOWN_RESUME_TEMPLATE = (
    "# Resume Snapshot\n\n"
    "## Summary\n\n- \n\n"
    "## Experience\n\n- \n\n"
    "## Education\n\n- \n\n"
    "## Projects\n\n- \n\n"
    "## Skills\n\n- "
)

LIST_FIELDS = ("experience", "education", "projects", "skills")
OBJECT_FIELDS = ("basics",)

_STRING = {"type": "string"}
_STRING_LIST = {"type": "array", "items": _STRING}


def _entry_schema(*string_fields: str, list_field: str) -> Dict[str, Any]:
    properties: Dict[str, Any] = {name: _STRING for name in string_fields}
    properties[list_field] = _STRING_LIST
    return {"type": "object", "properties": properties}


RESUME_UPDATE_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "basics": {
            "type": "object",
            "properties": {
                name: _STRING
                for name in ("name", "title", "email", "phone", "location", "website")
            },
        },
        "summary": _STRING,
        "experience": {
            "type": "array",
            "items": _entry_schema(
                "company", "title", "location", "startDate", "endDate", list_field="highlights"
            ),
        },
        "education": {
            "type": "array",
            "items": _entry_schema(
                "institution", "degree", "field", "startDate", "endDate", list_field="details"
            ),
        },
        "projects": {
            "type": "array",
            "items": _entry_schema("name", "description", "url", list_field="highlights"),
        },
        "skills": _STRING_LIST,
    },
}

MARKDOWN_UPDATE_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {MARKDOWN_KEY: _STRING},
    "required": [MARKDOWN_KEY],
}

_OUTER_FENCE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n([\s\S]*?)\n?```$")
_INNER_FENCE = re.compile(r"```[a-zA-Z0-9_-]*\s*\n([\s\S]*?)\n?```")
_TRAILING_COMMA = re.compile(r",(\s*[\]}])")
_SMART_QUOTES = str.maketrans(
    {"“": '"', "”": '"', "„": '"', "‘": "'", "’": "'"}
)


def default_document(variant: str) -> Dict[str, Any]:
    if variant == MARKDOWN_VARIANT:
        return {MARKDOWN_KEY: MARKDOWN_RESUME_TEMPLATE}
    return {
        "basics": {},
        "summary": "",
        "experience": [],
        "education": [],
        "projects": [],
        "skills": [],
    }


def unwrap_code_fence(value: str) -> str:
    trimmed = value.strip()
    if not trimmed.startswith("```"):
        return value
    match = _OUTER_FENCE.match(trimmed)
    if match:
        return match.group(1).strip()
    return value


def _as_is(text: str) -> Optional[str]:
    return text.strip() or None


def _fenced_interior(text: str) -> Optional[str]:
    match = _INNER_FENCE.search(text)
    if not match:
        return None
    return match.group(1).strip() or None


def _bracket_slice(text: str) -> Optional[str]:
    first_obj = text.find("{")
    first_arr = text.find("[")
    if first_obj == -1 and first_arr == -1:
        return None
    if first_arr == -1 or (first_obj != -1 and first_obj < first_arr):
        start, closer = first_obj, "}"
    else:
        start, closer = first_arr, "]"
    end = text.rfind(closer)
    if end <= start:
        # Truncated payload; the lenient pass closes it.
        return text[start:]
    return text[start : end + 1]


PARSE_STRATEGIES: Tuple[Tuple[str, Callable[[str], Optional[str]]], ...] = (
    ("as_is", _as_is),
    ("fenced", _fenced_interior),
    ("bracket_slice", _bracket_slice),
)


def _close_open_structures(text: str) -> str:
    closers: List[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            closers.append("}")
        elif char == "[":
            closers.append("]")
        elif char in "}]" and closers and closers[-1] == char:
            closers.pop()
    suffix = ('"' if in_string else "") + "".join(reversed(closers))
    return text + suffix


def _lenient_repair(text: str) -> str:
    repaired = text.translate(_SMART_QUOTES).rstrip()
    repaired = _close_open_structures(repaired)
    return _TRAILING_COMMA.sub(r"\1", repaired)


def parse_json_payload(text: str) -> Any:
    """Parse JSON out of free-form model output.

    Strategies run in order and each gets a second try after the lenient
    repair pass. Raises ValueError when nothing parses.
    """
    for _name, strategy in PARSE_STRATEGIES:
        candidate = strategy(text)
        if candidate is None:
            continue
        for attempt in (candidate, _lenient_repair(candidate)):
            try:
                return json.loads(attempt)
            except json.JSONDecodeError:
                continue
    raise ValueError("no_json_payload")


def validate_resume_update(payload: Any, schema: Dict[str, Any] = RESUME_UPDATE_SCHEMA) -> Optional[str]:
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(payload), key=lambda err: [str(p) for p in err.path])
    if errors:
        return "; ".join(
            f"{'/'.join(map(str, err.path)) or '<root>'}: {err.message}" for err in errors[:5]
        )
    return None


def merge_resume_document(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in update.items():
        if key in OBJECT_FIELDS and isinstance(value, dict):
            current = base.get(key)
            merged[key] = {**(current if isinstance(current, dict) else {}), **value}
        else:
            # List fields are replaced wholesale, never merged element-wise.
            merged[key] = copy.deepcopy(value)
    return merged


def merge_markdown_resume(current: str, replacement: str) -> Optional[str]:
    """Return the new markdown, or None when it would not change anything."""
    unwrapped = unwrap_code_fence(replacement)
    if unwrapped.strip() == (current or "").strip():
        return None
    return unwrapped


@dataclass(frozen=True)
class MergeReport:
    applied: bool
    reason: str
    fields: Tuple[str, ...] = ()


Listener = Callable[[Dict[str, Any]], None]


class ResumeStateStore:
    def __init__(self, variant: str = MARKDOWN_VARIANT, initial: Optional[Dict[str, Any]] = None) -> None:
        if variant not in VARIANTS:
            raise ValueError(f"unknown resume state variant: {variant}")
        self._variant = variant
        self._state: Dict[str, Any] = initial if initial is not None else default_document(variant)
        self._version = 0
        self._listeners: List[Listener] = []

    @property
    def variant(self) -> str:
        return self._variant

    @property
    def state(self) -> Dict[str, Any]:
        return self._state

    @property
    def version(self) -> int:
        return self._version

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def apply_update(self, update: Any) -> MergeReport:
        try:
            if self._variant == MARKDOWN_VARIANT:
                report = self._apply_markdown(update)
            else:
                report = self._apply_structured(update)
        except Exception as exc:  # noqa: BLE001
            LOGGER.error(
                "resume_update_failed",
                variant=self._variant,
                error=str(exc),
                error_type=exc.__class__.__name__,
                update_preview=core_logging.preview(update),
            )
            return MergeReport(False, f"internal_error:{exc.__class__.__name__}")
        if report.applied:
            LOGGER.info(
                "resume_update_applied",
                variant=self._variant,
                version=self._version,
                fields=list(report.fields),
            )
        return report

    def _reject(self, reason: str, update: Any, **fields: Any) -> MergeReport:
        LOGGER.warning(
            "resume_update_rejected",
            variant=self._variant,
            reason=reason,
            update_preview=core_logging.preview(update),
            **fields,
        )
        return MergeReport(False, reason)

    def _apply_markdown(self, update: Any) -> MergeReport:
        if isinstance(update, str):
            replacement = update
            try:
                parsed = parse_json_payload(update)
            except ValueError:
                parsed = None
            if isinstance(parsed, dict) and MARKDOWN_KEY in parsed:
                detail = validate_resume_update(parsed, MARKDOWN_UPDATE_SCHEMA)
                if detail:
                    return self._reject(f"schema_invalid:{detail}", parsed)
                replacement = parsed[MARKDOWN_KEY]
        elif isinstance(update, dict):
            detail = validate_resume_update(update, MARKDOWN_UPDATE_SCHEMA)
            if detail:
                return self._reject(f"schema_invalid:{detail}", update)
            replacement = update[MARKDOWN_KEY]
        else:
            return self._reject("invalid_type", update, update_type=type(update).__name__)

        merged = merge_markdown_resume(self._state.get(MARKDOWN_KEY, ""), replacement)
        if merged is None:
            return MergeReport(False, "unchanged")
        self._commit({**self._state, MARKDOWN_KEY: merged})
        return MergeReport(True, "applied", (MARKDOWN_KEY,))

    def _apply_structured(self, update: Any) -> MergeReport:
        payload = update
        if isinstance(update, str):
            try:
                payload = parse_json_payload(update)
            except ValueError:
                return self._reject("unparseable", update)
        if not isinstance(payload, dict):
            return self._reject("invalid_type", update, update_type=type(payload).__name__)
        detail = validate_resume_update(payload)
        if detail:
            return self._reject(f"schema_invalid:{detail}", update)
        merged = merge_resume_document(self._state, payload)
        if merged == self._state:
            return MergeReport(False, "unchanged")
        self._commit(merged)
        return MergeReport(True, "applied", tuple(sorted(payload)))

    def _commit(self, document: Dict[str, Any]) -> None:
        self._state = document
        self._version += 1
        for listener in list(self._listeners):
            try:
                listener(document)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("resume_listener_failed", error=str(exc))
