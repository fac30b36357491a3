from __future__ import annotations

from typing import Any, Callable, Mapping, Optional

Predicate = Callable[[Any], bool]


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return True


def _as_list(element: Any) -> list[Any]:
    if element is None:
        return []
    if isinstance(element, (list, tuple)):
        return list(element)
    return [element]


def _child(element: Any, key: str) -> Any:
    if isinstance(element, Mapping):
        return element.get(key)
    return None


def can_resolve_path(element: Any, path: str, predicate: Optional[Predicate] = None) -> bool:
    """True when the dotted `path` reaches a present value under `element`.

    Lists fan out at every step. With `predicate`, at least one reached value
    must also satisfy it.
    """
    if not path:
        if element is None:
            return False
        if predicate is not None:
            return any(predicate(el) for el in _as_list(element))
        return True

    head, _, rest = path.partition(".")
    candidates = [el for el in _as_list(element) if _present(_child(el, head))]
    if not candidates:
        return False
    return any(can_resolve_path(_child(el, head), rest, predicate) for el in candidates)


def resolve_element_from_path(
    element: Any, path: str, predicate: Optional[Predicate] = None
) -> Any:
    """First value found at the dotted `path`, or None."""
    elements = _as_list(element)
    if not path:
        if predicate is not None:
            elements = [el for el in elements if predicate(el)]
        return elements[0] if elements else None

    head, _, rest = path.partition(".")
    for el in elements:
        child = _child(el, head)
        if not _present(child):
            continue
        found = resolve_element_from_path(child, rest, predicate)
        if found is not None:
            return found
    return None


def _human_name_value(name: Mapping[str, Any]) -> Optional[str]:
    if name.get("family"):
        return str(name["family"])
    given = name.get("given")
    if isinstance(given, list) and given:
        return str(given[0])
    if name.get("text"):
        return str(name["text"])
    return None


def _address_value(address: Mapping[str, Any]) -> Optional[str]:
    for key in ("text", "city", "state", "postalCode", "country"):
        if address.get(key):
            return str(address[key])
    return None


def get_value_for_search_param(element: Any) -> Optional[str]:
    """Turn a resolved resource element into a usable search value."""
    if element is None:
        return None
    if not isinstance(element, Mapping):
        return str(element)

    if "start" in element or "end" in element:
        if element.get("start"):
            return "gt" + str(element["start"])
        if element.get("end"):
            return "lt" + str(element["end"])
        return None
    if "reference" in element:
        return str(element["reference"]) if element.get("reference") else None
    if "coding" in element:
        coding = resolve_element_from_path(element, "coding.code")
        return str(coding) if coding is not None else None
    if "family" in element or "given" in element:
        return _human_name_value(element)
    if any(k in element for k in ("city", "state", "postalCode", "country")):
        return _address_value(element)
    if "value" in element:
        return str(element["value"]) if element.get("value") is not None else None
    if "code" in element:
        return str(element["code"]) if element.get("code") is not None else None
    if "text" in element:
        return str(element["text"]) if element.get("text") else None
    return None
