# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/llm/tools.py
"""
Builder tool schemas and the pure helpers the tool-call driver uses to recover
a usable tool call from a model that did not produce one cleanly.
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, Optional, Tuple

from builder_ai_app.infra.llm.llm_data_model import ToolSchema

UNKNOWN_TOOL = "unknown"

EMIT_FILES = "emitFiles"
BUILD_MODULE_TREE = "build_module_tree_from_prompt"

_KNOWN_TOOL_RE = re.compile(r"build_module_tree_from_prompt|emitFiles|emit_files|build_tree", re.IGNORECASE)
_FILE_EMISSION_RE = re.compile(r"emitfiles|emit_files", re.IGNORECASE)
_FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_FENCED_ANY_RE = re.compile(r"```[a-zA-Z0-9_-]*\s*([\s\S]*?)```")

_MODULE_NODE = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "description": {"type": "string"},
        "files": {"type": "array", "items": {"type": "string"}},
        "children": {"type": "array", "items": {"$ref": "#/$defs/moduleNode"}},
        "meta": {"type": "object", "additionalProperties": True},
    },
    "required": ["id", "name"],
    "additionalProperties": True,
}

BUILD_MODULE_TREE_TOOL = ToolSchema(
    name=BUILD_MODULE_TREE,
    description=(
        "Build a nested ModuleNode tree. Call this function with an object "
        "containing `moduleTree` (root ModuleNode)."
    ),
    parameters={
        "type": "object",
        "properties": {
            "projectName": {"type": "string"},
            "prompt": {"type": "string"},
            "moduleTree": {"$ref": "#/$defs/moduleNode"},
            "options": {"type": "object", "additionalProperties": True},
        },
        "required": ["moduleTree"],
        "additionalProperties": False,
        "$defs": {"moduleNode": _MODULE_NODE},
    },
)

EMIT_FILES_TOOL = ToolSchema(
    name=EMIT_FILES,
    description="Return { operations: FileOperation[] } describing files to create, update or delete.",
    parameters={
        "type": "object",
        "properties": {
            "projectId": {"type": "string"},
            "operations": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "path": {"type": "string"},
                        "action": {"type": "string", "enum": ["create", "update", "delete"]},
                        "content": {"type": "string"},
                        "encoding": {"type": "string", "enum": ["utf-8", "base64"]},
                        "meta": {"type": "object", "additionalProperties": True},
                    },
                    "required": ["path", "action"],
                    "additionalProperties": True,
                },
                "minItems": 0,
            },
        },
        "required": ["operations"],
        "additionalProperties": False,
    },
)

PROJECT_TOOLS = [BUILD_MODULE_TREE_TOOL, EMIT_FILES_TOOL]


def is_file_emission_tool(name: Optional[str]) -> bool:
    return bool(name) and bool(_FILE_EMISSION_RE.search(name))


def default_tool_args(tool_name: Optional[str], reason: str = "no output from model") -> str:
    """Minimal args payload for the tool family; always valid JSON."""
    if is_file_emission_tool(tool_name):
        return json.dumps({"operations": []})
    return json.dumps({
        "id": "root",
        "name": "Root Module",
        "description": f"Fallback root module ({reason}).",
        "children": [],
    })


def infer_tool_name(text: str, tool_names: Iterable[str] = ()) -> Optional[str]:
    """Conservative match of known tool-name tokens (then the offered schema names) in free text."""
    if not text:
        return None
    m = _KNOWN_TOOL_RE.search(text)
    if m:
        return m.group(0)
    for name in tool_names:
        if name and re.search(rf"\b{re.escape(name)}\b", text):
            return name
    return None


def _balanced_object(text: str) -> Optional[str]:
    start = text.find("{")
    while start != -1:
        depth = 0
        in_str = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_str:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_str = False
                continue
            if ch == '"':
                in_str = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    candidate = text[start:i + 1]
                    try:
                        json.loads(candidate)
                        return candidate
                    except ValueError:
                        break
        start = text.find("{", start + 1)
    return None


def extract_json_from_text(text: str) -> Optional[Any]:
    """
    Find a JSON object inside free text.
    Tries ```json fences, then any fence, then a balanced-brace scan.
    Returns the parsed object or None.
    """
    if not text or not text.strip():
        return None
    stripped = text.strip()
    try:
        parsed = json.loads(stripped)
        if isinstance(parsed, (dict, list)):
            return parsed
    except ValueError:
        pass

    for rx in (_FENCED_JSON_RE, _FENCED_ANY_RE):
        for m in rx.finditer(text):
            body = m.group(1).strip()
            try:
                return json.loads(body)
            except ValueError:
                candidate = _balanced_object(body)
                if candidate is not None:
                    return json.loads(candidate)

    candidate = _balanced_object(text)
    if candidate is not None:
        return json.loads(candidate)
    return None


def tool_call_from_parsed(parsed: Any) -> Optional[Tuple[Optional[str], str]]:
    """
    Map a JSON value recovered from text to (tool_name, args_json).
    Recognised shapes: {tool, args|arguments}, {operations}, {moduleTree}, {id, name}.
    """
    if not isinstance(parsed, dict):
        return None
    tool = parsed.get("tool")
    if tool and ("args" in parsed or "arguments" in parsed):
        args = parsed.get("args", parsed.get("arguments"))
        if isinstance(args, str):
            return str(tool), args
        return str(tool), json.dumps(args)
    if isinstance(parsed.get("operations"), list):
        return EMIT_FILES, json.dumps(parsed)
    if isinstance(parsed.get("moduleTree"), dict):
        return BUILD_MODULE_TREE, json.dumps(parsed)
    if "id" in parsed and "name" in parsed:
        return BUILD_MODULE_TREE, json.dumps(parsed)
    return None


def is_valid_json(buffer: Optional[str]) -> bool:
    if not buffer or not buffer.strip():
        return False
    try:
        json.loads(buffer)
        return True
    except ValueError:
        return False


def parse_tool_args(buffer: str) -> Dict[str, Any]:
    """Parse an args buffer into a dict; non-object JSON is wrapped under "value"."""
    parsed = json.loads(buffer)
    return parsed if isinstance(parsed, dict) else {"value": parsed}
