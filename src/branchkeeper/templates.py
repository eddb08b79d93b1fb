from __future__ import annotations

import json
import re
from typing import Any, Mapping

# {{{key}}} is substituted raw, {{key}} the same; both tolerate inner spaces
_PLACEHOLDER = re.compile(r"\{\{\{?\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\}?\}\}")


def _render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _lookup(mapping: Mapping[str, Any], dotted: str) -> Any:
    current: Any = mapping
    for part in dotted.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return None
    return current


def fill_template(src: str, mapping: Mapping[str, Any]) -> str:
    """Replace ``{{{key}}}`` and ``{{key}}`` placeholders.

    Dotted keys walk nested mappings (``{{{upgrade.dep_name}}}``). Unknown
    keys render as the empty string. Lists and dicts render as JSON, so a
    data file template of ``{{{upgrades}}}`` yields a JSON array.
    """
    return _PLACEHOLDER.sub(lambda m: _render_value(_lookup(mapping, m.group(1))), src)
