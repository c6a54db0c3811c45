"""Projection of typed Notion page properties into flat, simple values.

Values that are empty or invalid are omitted from the result rather than set
to None, so optional fields downstream see "absent".
"""

import re
from typing import Any, Optional
from urllib.parse import urlsplit

from .convert import rich_text_to_plain

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _valid_url(value: Any) -> Optional[str]:
    """Return the URL if it parses with a scheme and a location."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parts = urlsplit(value.strip())
    except ValueError:
        return None
    if not parts.scheme or not (parts.netloc or parts.path):
        return None
    if parts.scheme in ("http", "https") and not parts.netloc:
        return None
    return value


def _valid_email(value: Any) -> Optional[str]:
    if isinstance(value, str) and EMAIL_PATTERN.match(value.strip()):
        return value.strip()
    return None


def date_to_object(date: Optional[dict]) -> Optional[dict]:
    """Keep a date property's full range shape: {start, end, time_zone}."""
    if not date or not date.get("start"):
        return None
    return {
        "start": date.get("start"),
        "end": date.get("end"),
        "time_zone": date.get("time_zone"),
    }


def extract_value(prop: dict) -> Any:
    """Extract the simple value of one property; None means "omit".

    Unrecognized property types are returned unmodified.
    """
    prop_type = prop.get("type", "")

    if prop_type == "number":
        return prop.get("number")
    elif prop_type == "checkbox":
        return prop.get("checkbox")
    elif prop_type == "url":
        return _valid_url(prop.get("url"))
    elif prop_type == "email":
        return _valid_email(prop.get("email"))
    elif prop_type == "phone_number":
        return prop.get("phone_number") or None
    elif prop_type == "select":
        select = prop.get("select")
        return select.get("name") if select else None
    elif prop_type == "status":
        status = prop.get("status")
        return status.get("name") if status else None
    elif prop_type == "multi_select":
        options = prop.get("multi_select")
        if not isinstance(options, list):
            return []
        return [o.get("name") for o in options if isinstance(o, dict) and o.get("name")]
    elif prop_type == "title":
        return rich_text_to_plain(prop.get("title"))
    elif prop_type == "rich_text":
        return rich_text_to_plain(prop.get("rich_text"))
    elif prop_type == "date":
        return date_to_object(prop.get("date"))
    elif prop_type == "created_time":
        return prop.get("created_time")
    elif prop_type == "last_edited_time":
        return prop.get("last_edited_time")

    # Forward-compatible pass-through (files, people, relation, formula, ...)
    return prop


def project(properties: Optional[dict]) -> dict:
    """Map a page's property bag to a flat record of simple values.

    Args:
        properties: ``page["properties"]`` as returned by the API.

    Returns:
        Dict of property name to value, containing only present values.
    """
    flat: dict[str, Any] = {}
    for name, prop in (properties or {}).items():
        if not isinstance(prop, dict):
            continue
        value = extract_value(prop)
        if value is not None:
            flat[name] = value
    return flat


def page_title(page: dict) -> Optional[str]:
    """Plain-text title of a page, or None if it has no title property."""
    for prop in (page.get("properties") or {}).values():
        if isinstance(prop, dict) and prop.get("type") == "title":
            return rich_text_to_plain(prop.get("title"))
    return None


def page_data(page: dict, cover: Optional[dict] = None) -> dict:
    """Build the data record stored for a page.

    Flattened property values are exposed at the top level for convenience
    and again under ``flat``.

    Args:
        page: Raw page object.
        cover: Replacement cover descriptor (e.g. pointing at a cached file).
    """
    flat = project(page.get("properties"))
    data: dict[str, Any] = {
        "icon": page.get("icon"),
        "cover": cover if cover is not None else page.get("cover"),
        "archived": page.get("archived", False),
        "in_trash": page.get("in_trash", False),
        "url": page.get("url"),
        "public_url": page.get("public_url"),
        "properties": page.get("properties") or {},
    }
    data.update(flat)
    data["flat"] = flat
    return data
