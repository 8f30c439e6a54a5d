"""JSON persistence helpers for settings and statistics files."""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar, cast

from yarl import URL

from droppilot.config import JsonType


_JSON_T = TypeVar("_JSON_T", bound=Mapping[Any, Any])
_MISSING = object()


# maps stored type names to the callables rebuilding them
SERIALIZE_ENV: dict[str, Callable[[Any], object]] = {
    "set": set,
    "URL": URL,
    "datetime": lambda d: datetime.fromtimestamp(d, timezone.utc),
}


def json_minify(data: JsonType | list[JsonType]) -> str:
    """Return minified JSON string (no whitespace) for payload usage."""
    return json.dumps(data, separators=(",", ":"))


def _serialize(obj: Any) -> Any:
    """
    Encode the types `json` can't handle, tagging them with their type name.
    """
    d: int | str | float | list[Any] | JsonType
    if isinstance(obj, datetime):
        if obj.tzinfo is None:
            # naive objects are UTC
            obj = obj.replace(tzinfo=timezone.utc)
        d = obj.timestamp()
    elif isinstance(obj, set):
        d = list(obj)
    elif isinstance(obj, Enum):
        # str enums serialize natively, this only catches the rest
        d = obj.value
    elif isinstance(obj, URL):
        d = str(obj)
    else:
        raise TypeError(obj)
    return {
        "__type": type(obj).__name__,
        "data": d,
    }


def _remove_missing(obj: JsonType) -> JsonType:
    # NOTE: modifies obj in place, returns it for convenience
    for key, value in obj.copy().items():
        if value is _MISSING:
            del obj[key]
        elif isinstance(value, dict):
            _remove_missing(value)
    return obj


def _deserialize(obj: JsonType) -> Any:
    if "__type" in obj:
        obj_type = obj["__type"]
        if obj_type in SERIALIZE_ENV:
            return SERIALIZE_ENV[obj_type](obj["data"])
        return _MISSING
    return obj


def merge_json(obj: JsonType, template: Mapping[Any, Any]) -> None:
    """
    Merge a loaded JSON object with a template of defaults, in place.

    - keys not present in the template are removed
    - values of a different type than the template's are replaced
    - missing keys are added from the template
    - nested dictionaries are merged recursively, except when the template
      dictionary is empty, which accepts any keys (free-form mappings)
    """
    if not template:
        return
    for k, v in list(obj.items()):
        if k not in template:
            del obj[k]
        elif type(v) is not type(template[k]):
            # int/float mixups are fine, a float field may have been saved as 0
            if isinstance(template[k], float) and isinstance(v, int) and not isinstance(v, bool):
                obj[k] = float(v)
            else:
                obj[k] = template[k]
        elif isinstance(v, dict):
            merge_json(v, template[k])
    for k in template:
        if k not in obj:
            obj[k] = template[k]


def json_load(path: Path, defaults: _JSON_T, *, merge: bool = True) -> _JSON_T:
    """
    Load a JSON file, falling back to the defaults.

    Args:
        path: Path to the JSON file
        defaults: Values used when the file doesn't exist, and the template for merging
        merge: If True, merge the loaded data with the defaults template

    Returns:
        Loaded and optionally merged data. The defaults are never returned by reference.
    """
    # round-trip the defaults, so that mutable values are never shared with them
    defaults_dict: JsonType = json.loads(
        json.dumps(dict(defaults), default=_serialize), object_hook=_deserialize
    )
    if path.exists():
        with open(path, encoding="utf8") as file:
            combined: JsonType = _remove_missing(json.load(file, object_hook=_deserialize))
        if merge:
            merge_json(combined, defaults_dict)
    else:
        combined = defaults_dict
    return cast(_JSON_T, combined)


def json_save(path: Path, contents: Mapping[Any, Any], *, sort: bool = False) -> None:
    """
    Save data to a JSON file, encoding URLs, sets, datetimes and enums.

    Args:
        path: Path to save the JSON file at
        contents: Data to serialize
        sort: If True, sort keys alphabetically
    """
    with open(path, 'w', encoding="utf8") as file:
        json.dump(contents, file, default=_serialize, sort_keys=sort, indent=4)
