"""Tool call detection for model output.

Native structured calls always win. When a model writes its calls into the
answer text instead, an ordered pipeline of recovery strategies is tried and
the first one that yields calls wins:

1. complete tagged blocks (``<tool_call>``, ``<function_call>``, the
   ``<|tool_calls_begin|>`` marker family and XML ``<invoke>`` forms),
2. an unclosed trailing block cut off by the output limit,
3. JSON payload objects anywhere in the text,
4. the whole text as one payload,
5. a bare identifier naming a known tool.

Every strategy is total: malformed input yields ``[]`` and never raises.
"""

from __future__ import annotations

import html
import json
import logging
import re
import uuid
from typing import Any, Callable, Collection, Iterator, Mapping, Sequence

from ..ai_types import ToolCall

__all__ = [
    "TOOL_MARKER_TRANSLATION",
    "TOOL_CALLS_BLOCK_RE",
    "TOOL_CALL_ENTRY_RE",
    "TAGGED_BLOCK_RE",
    "extract_tool_calls",
    "parse_tagged_blocks",
    "recover_unclosed_block",
    "scan_payload_blocks",
    "parse_whole_text",
    "parse_bare_identifier",
    "parse_embedded_tool_calls",
    "payload_to_tool_call",
    "repair_json_fragment",
    "recover_truncated_write",
    "normalize_tool_marker_text",
    "parsed_tool_call_id",
    "try_parse_json_block",
]

LOGGER = logging.getLogger(__name__)

# Normalizes stylized glyphs inside <|tool ...|> markers emitted by some models.
TOOL_MARKER_TRANSLATION = str.maketrans(
    {
        ord("＜"): "<",
        ord("﹤"): "<",
        ord("〈"): "<",
        ord("《"): "<",
        ord("＞"): ">",
        ord("﹥"): ">",
        ord("〉"): ">",
        ord("》"): ">",
        ord("｜"): "|",
        ord("￨"): "|",
        ord("│"): "|",
        ord("︱"): "|",
        ord("︲"): "|",
        ord("▁"): "_",
        ord("\u00a0"): " ",
        ord("\u1680"): " ",
        ord("\u2000"): " ",
        ord("\u2001"): " ",
        ord("\u2002"): " ",
        ord("\u2003"): " ",
        ord("\u2004"): " ",
        ord("\u2005"): " ",
        ord("\u2006"): " ",
        ord("\u2007"): " ",
        ord("\u2008"): " ",
        ord("\u2009"): " ",
        ord("\u200a"): " ",
        ord("\u200b"): " ",
        ord("\u200c"): " ",
        ord("\u200d"): " ",
        ord("\u202f"): " ",
        ord("\u205f"): " ",
        ord("\u3000"): " ",
        ord("\ufeff"): " ",
    }
)

TOOL_CALLS_BLOCK_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*calls[\s_]*begin\s*\|?\s*>(?P<body>.*?)<\s*\|?\s*tool[\s_]*calls[\s_]*end\s*\|?\s*>",
    re.IGNORECASE | re.DOTALL,
)

TOOL_CALL_ENTRY_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*call[\s_]*begin\s*\|?\s*>(?P<name>.*?)<\s*\|?\s*tool[\s_]*sep\s*\|?\s*>(?P<args>.*?)<\s*\|?\s*tool[\s_]*call[\s_]*end\s*\|?\s*>",
    re.IGNORECASE | re.DOTALL,
)

TAGGED_BLOCK_RE = re.compile(
    r"<\s*(?P<tag>tool_call|function_call)\s*>(?P<body>.*?)<\s*/\s*(?P=tag)\s*>",
    re.IGNORECASE | re.DOTALL,
)

INVOKE_BLOCK_RE = re.compile(r"<invoke\s+name=\"(?P<name>[^\"]+)\"\s*>(?P<body>.*?)</invoke>", re.DOTALL)
INVOKE_PARAM_RE = re.compile(r"<parameter\s+name=\"(?P<name>[^\"]+)\"\s*>(?P<value>.*?)</parameter>", re.DOTALL)
FUNCTION_BLOCK_RE = re.compile(r"<function=(?P<name>[^>]+)>(?P<body>.*?)</function>", re.DOTALL)
FUNCTION_PARAM_RE = re.compile(r"<parameter=(?P<name>[^>]+)>(?P<value>.*?)</parameter>", re.DOTALL)

_OPEN_TAG_RE = re.compile(
    r"<\s*(?:tool_call|function_call)\s*>|<\s*\|?\s*tool[\s_]*call[\s_]*begin\s*\|?\s*>",
    re.IGNORECASE,
)
_CLOSE_TAG_RE = re.compile(
    r"<\s*/\s*(?:tool_call|function_call)\s*>|<\s*\|?\s*tool[\s_]*call[\s_]*end\s*\|?\s*>",
    re.IGNORECASE,
)
_TOOL_SEP_RE = re.compile(r"<\s*\|?\s*tool[\s_]*sep\s*\|?\s*>", re.IGNORECASE)
_FENCE_RE = re.compile(r"```(?:json|tool_call|javascript)?\s*(?P<body>.*?)```", re.IGNORECASE | re.DOTALL)
_TOOL_NAME_RE = re.compile(r"^[A-Za-z_][\w.\-]{0,127}$")
_BARE_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][\w.\-]{0,127}(?:\(\s*\))?$")
_NAME_FIELD_RE = re.compile(r"\"(?:name|tool)\"\s*:\s*\"(?P<name>[^\"]+)\"")
_STRING_FIELD_RE = re.compile(r"\"(?P<key>\w+)\"\s*:\s*\"(?P<value>(?:[^\"\\]|\\.)*)\"")
_LARGE_CONTENT_KEYS = ("content", "text", "body", "data", "new_content")
_ARGUMENT_KEYS = ("arguments", "parameters", "args", "input")
_MAX_REPAIR_PASSES = 8

Strategy = Callable[[str, "Collection[str] | None"], "list[ToolCall]"]


def extract_tool_calls(
    raw_text: str | None,
    native_calls: Sequence[ToolCall | Mapping[str, Any]] | None = None,
    *,
    known_tools: Collection[str] | None = None,
) -> list[ToolCall]:
    """Return the tool calls requested by one model response.

    ``known_tools`` restricts the loose strategies (payload scanning, whole
    text and bare identifiers) to the active tool catalogue; ``None`` means
    unrestricted.
    """

    native = _coerce_native_calls(native_calls or ())
    if native:
        return native
    if not raw_text or not raw_text.strip():
        return []
    text = normalize_tool_marker_text(raw_text)
    for strategy in FALLBACK_STRATEGIES:
        try:
            calls = strategy(text, known_tools)
        except Exception:  # pragma: no cover
            LOGGER.debug("Tool call strategy %s failed", strategy.__name__, exc_info=True)
            continue
        if calls:
            LOGGER.debug("Recovered %d tool call(s) from text via %s", len(calls), strategy.__name__)
            return calls
    return []


def parse_tagged_blocks(text: str, known_tools: Collection[str] | None = None) -> list[ToolCall]:
    """Parse complete ``<tool_call>``-style blocks, marker blocks and ``<invoke>`` forms."""

    calls: list[ToolCall] = []
    for match in TAGGED_BLOCK_RE.finditer(text):
        call = _call_from_payload_text(match.group("body"), len(calls), strict=False)
        if call is not None:
            calls.append(call)
    calls.extend(parse_embedded_tool_calls(text, start_index=len(calls)))
    calls.extend(_parse_xml_invocations(text, start_index=len(calls)))
    return calls


def recover_unclosed_block(text: str, known_tools: Collection[str] | None = None) -> list[ToolCall]:
    """Recover a trailing call whose closing marker never arrived."""

    opening = None
    for opening in _OPEN_TAG_RE.finditer(text):
        pass
    if opening is None:
        return []
    fragment = text[opening.end() :]
    if _CLOSE_TAG_RE.search(fragment):
        return []
    separator = _TOOL_SEP_RE.search(fragment)
    if separator is not None:
        # Marker form: <|tool_call_begin|>name<|tool_sep|>{arguments...
        name = fragment[: separator.start()].strip().strip("\"' \t\r\n")
        if not _TOOL_NAME_RE.match(name):
            return []
        arguments = repair_json_fragment(fragment[separator.end() :])
        return [
            ToolCall(
                call_id=parsed_tool_call_id(name, 0),
                name=name,
                arguments=json.dumps(arguments if arguments is not None else {}, ensure_ascii=False),
            )
        ]
    payload = repair_json_fragment(fragment, drop_trailing=False)
    if payload is None:
        # Large write payloads often break the JSON; recover them before dropping members.
        write_call = recover_truncated_write(fragment)
        if write_call is not None:
            return [write_call]
        payload = repair_json_fragment(fragment)
    if payload is None:
        return []
    call = payload_to_tool_call(payload, 0)
    return [call] if call is not None else []


def scan_payload_blocks(text: str, known_tools: Collection[str] | None = None) -> list[ToolCall]:
    """Collect payload objects from fenced blocks or brace-balanced spans."""

    candidates = [match.group("body") for match in _FENCE_RE.finditer(text)]
    if not candidates:
        candidates = list(_iter_balanced_objects(text))
    calls: list[ToolCall] = []
    for candidate in candidates:
        call = _call_from_payload_text(candidate, len(calls), strict=True)
        if call is not None and _is_known(call.name, known_tools):
            calls.append(call)
    return calls


def parse_whole_text(text: str, known_tools: Collection[str] | None = None) -> list[ToolCall]:
    """Interpret the entire response as a payload or a list of payloads."""

    stripped = text.strip()
    fence = _FENCE_RE.fullmatch(stripped)
    if fence is not None:
        stripped = fence.group("body").strip()
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        return []
    payloads = parsed if isinstance(parsed, list) else [parsed]
    calls: list[ToolCall] = []
    for payload in payloads:
        if not isinstance(payload, Mapping):
            continue
        call = payload_to_tool_call(payload, len(calls))
        if call is not None and _is_known(call.name, known_tools):
            calls.append(call)
    return calls


def parse_bare_identifier(text: str, known_tools: Collection[str] | None = None) -> list[ToolCall]:
    """Treat a response consisting of one identifier as an argument-less call."""

    stripped = text.strip().strip("`").strip()
    if not _BARE_IDENTIFIER_RE.match(stripped):
        return []
    name = stripped.removesuffix("()").rstrip("( ")
    if known_tools is not None and name not in known_tools:
        return []
    return [ToolCall(call_id=parsed_tool_call_id(name, 0), name=name, arguments="{}")]


FALLBACK_STRATEGIES: tuple[Strategy, ...] = (
    parse_tagged_blocks,
    recover_unclosed_block,
    scan_payload_blocks,
    parse_whole_text,
    parse_bare_identifier,
)


def normalize_tool_marker_text(text: str) -> str:
    """Normalize stylized Unicode glyphs to ASCII equivalents for tool parsing."""
    return text.translate(TOOL_MARKER_TRANSLATION)


def parse_embedded_tool_calls(text: str, start_index: int = 0) -> list[ToolCall]:
    """Parse calls from ``<|tool_calls_begin|>...<|tool_calls_end|>`` blocks."""

    if not text:
        return []
    calls: list[ToolCall] = []
    for block in TOOL_CALLS_BLOCK_RE.finditer(normalize_tool_marker_text(text)):
        for entry in TOOL_CALL_ENTRY_RE.finditer(block.group("body") or ""):
            name = (entry.group("name") or "").strip().strip("\"' \t\n\r")
            if not _TOOL_NAME_RE.match(name):
                continue
            args_raw = (entry.group("args") or "").strip()
            parsed = try_parse_json_block(_strip_fence(args_raw))
            arguments = json.dumps(parsed, ensure_ascii=False) if parsed is not None else "{}"
            index = start_index + len(calls)
            calls.append(ToolCall(call_id=parsed_tool_call_id(name, index), name=name, arguments=arguments))
    return calls


def payload_to_tool_call(payload: Mapping[str, Any], index: int, *, strict: bool = False) -> ToolCall | None:
    """Convert one decoded payload into a :class:`ToolCall`.

    Accepted shapes are ``{name, arguments|parameters|args|input}``,
    ``{function: {name, arguments}}`` and ``{tool, ...}``. With ``strict`` a
    bare ``{name: ...}`` object is not enough; an arguments key is required.
    """

    name: Any = None
    arguments: Any = None
    has_arguments = False
    function = payload.get("function")
    if isinstance(function, Mapping):
        name = function.get("name")
        arguments = function.get("arguments")
        has_arguments = True
    elif isinstance(payload.get("name"), str):
        name = payload["name"]
        for key in _ARGUMENT_KEYS:
            if key in payload:
                arguments = payload[key]
                has_arguments = True
                break
    elif isinstance(payload.get("tool"), str):
        name = payload["tool"]
        has_arguments = True
        for key in _ARGUMENT_KEYS:
            if key in payload:
                arguments = payload[key]
                break
        else:
            arguments = {key: value for key, value in payload.items() if key not in ("tool", "id", "type")}
    if not isinstance(name, str):
        return None
    name = name.strip()
    if not _TOOL_NAME_RE.match(name):
        return None
    if strict and not has_arguments:
        return None
    return ToolCall(call_id=parsed_tool_call_id(name, index), name=name, arguments=_serialize_arguments(arguments))


def repair_json_fragment(fragment: str, *, drop_trailing: bool = True) -> dict[str, Any] | None:
    """Close a truncated JSON object and parse it.

    Open strings and brackets are closed; when that is not enough, trailing
    members are dropped one separator at a time.
    """

    start = fragment.find("{")
    if start < 0:
        return None
    text = _strip_fence(fragment[start:]).rstrip()
    for _ in range(_MAX_REPAIR_PASSES):
        parsed = try_parse_json_block(_close_open_structures(text))
        if parsed is not None:
            return parsed
        if not drop_trailing:
            return None
        cut = text.rfind(",")
        if cut <= 0:
            return None
        text = text[:cut]
    return None


def recover_truncated_write(fragment: str) -> ToolCall | None:
    """Recover a write-style call whose large string argument broke the JSON.

    The large value runs from its opening quote to the last plausible closing
    quote of the fragment (or to the end of the fragment when it was cut off).
    Short string arguments before it are picked up individually.
    """

    name_match = _NAME_FIELD_RE.search(fragment)
    if name_match is None:
        return None
    name = name_match.group("name").strip()
    if not _TOOL_NAME_RE.match(name):
        return None
    content_match = None
    for key in _LARGE_CONTENT_KEYS:
        content_match = re.search(rf"\"{key}\"\s*:\s*\"", fragment)
        if content_match is not None:
            break
    if content_match is None:
        return None
    key = content_match.group(0).split('"')[1]
    arguments: dict[str, Any] = {}
    for field in _STRING_FIELD_RE.finditer(fragment[: content_match.start()]):
        if field.group("key") in ("name", "tool"):
            continue
        arguments[field.group("key")] = _decode_json_string(field.group("value"))
    raw_value = fragment[content_match.end() :]
    closing = re.search(r"\"\s*[}\]]*\s*(?:```\s*)?$", raw_value)
    if closing is not None:
        raw_value = raw_value[: closing.start()]
    arguments[key] = _decode_json_string(raw_value)
    LOGGER.debug("Recovered truncated %s call (%d chars of %s)", name, len(arguments[key]), key)
    return ToolCall(
        call_id=parsed_tool_call_id(name, 0),
        name=name,
        arguments=json.dumps(arguments, ensure_ascii=False),
    )


def parsed_tool_call_id(name: str, index: int) -> str:
    """Generate a unique tool call ID for parsed tool calls."""
    return f"parsed_{name}_{index}_{uuid.uuid4().hex[:8]}"


def try_parse_json_block(text: str) -> dict[str, Any] | None:
    """Attempt to parse text as JSON, returning None on failure."""
    if not text:
        return None
    try:
        result = json.loads(text)
        if isinstance(result, dict):
            return result
    except json.JSONDecodeError:
        pass
    return None


def _coerce_native_calls(native_calls: Sequence[ToolCall | Mapping[str, Any]]) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for index, raw in enumerate(native_calls):
        call = raw if isinstance(raw, ToolCall) else ToolCall.from_chat_param(raw)
        if not call.name:
            continue
        if not call.call_id:
            call = ToolCall(call_id=parsed_tool_call_id(call.name, index), name=call.name, arguments=call.arguments)
        calls.append(call)
    return calls


def _call_from_payload_text(text: str, index: int, *, strict: bool) -> ToolCall | None:
    body = _strip_fence(text.strip())
    payload = try_parse_json_block(body)
    if payload is None:
        payload = repair_json_fragment(body, drop_trailing=False)
    if payload is None and not strict:
        write_call = recover_truncated_write(body)
        if write_call is not None:
            return write_call
    if payload is None:
        payload = repair_json_fragment(body)
    if payload is None:
        return None
    return payload_to_tool_call(payload, index, strict=strict)


def _parse_xml_invocations(text: str, start_index: int = 0) -> list[ToolCall]:
    calls: list[ToolCall] = []
    forms = ((INVOKE_BLOCK_RE, INVOKE_PARAM_RE), (FUNCTION_BLOCK_RE, FUNCTION_PARAM_RE))
    for block_re, param_re in forms:
        for match in block_re.finditer(text):
            name = match.group("name").strip()
            if not _TOOL_NAME_RE.match(name):
                continue
            params = {
                param.group("name").strip(): _coerce_xml_value(html.unescape(param.group("value").strip()))
                for param in param_re.finditer(match.group("body"))
            }
            index = start_index + len(calls)
            calls.append(
                ToolCall(
                    call_id=parsed_tool_call_id(name, index),
                    name=name,
                    arguments=json.dumps(params, ensure_ascii=False),
                )
            )
    return calls


def _coerce_xml_value(value: str) -> Any:
    if value in ("true", "false", "null") or (value and value[0] in "0123456789-[{"):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            pass
    return value


def _close_open_structures(text: str) -> str:
    stack: list[str] = []
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
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack:
            stack.pop()
    repaired = text
    if in_string:
        if escaped:
            repaired = repaired[:-1]
        repaired += '"'
    repaired = repaired.rstrip()
    if repaired.endswith(","):
        repaired = repaired[:-1]
    elif repaired.endswith(":"):
        repaired += " null"
    return repaired + "".join(reversed(stack))


def _iter_balanced_objects(text: str) -> Iterator[str]:
    index = 0
    length = len(text)
    while index < length:
        start = text.find("{", index)
        if start < 0:
            return
        depth = 0
        in_string = False
        escaped = False
        end = None
        for position in range(start, length):
            char = text[position]
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
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    end = position + 1
                    break
        if end is None:
            return
        yield text[start:end]
        index = end


def _strip_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped[3:]
        newline = stripped.find("\n")
        if newline >= 0 and not stripped[:newline].strip().startswith("{"):
            stripped = stripped[newline + 1 :]
    if stripped.endswith("```"):
        stripped = stripped[:-3]
    return stripped.strip()


def _decode_json_string(raw: str) -> str:
    try:
        return json.loads(f'"{raw}"')
    except json.JSONDecodeError:
        pass
    if raw.endswith("\\") and not raw.endswith("\\\\"):
        raw = raw[:-1]
    try:
        return json.loads(f'"{raw}"')
    except json.JSONDecodeError:
        return (
            raw.replace("\\n", "\n")
            .replace("\\t", "\t")
            .replace('\\"', '"')
            .replace("\\\\", "\\")
        )


def _serialize_arguments(arguments: Any) -> str:
    if arguments is None:
        return "{}"
    if isinstance(arguments, str):
        return arguments.strip() or "{}"
    try:
        return json.dumps(arguments, ensure_ascii=False)
    except (TypeError, ValueError):
        return "{}"


def _is_known(name: str, known_tools: Collection[str] | None) -> bool:
    return known_tools is None or name in known_tools
