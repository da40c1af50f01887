"""
Conversion of Jupyter rich display payloads to HTML.

https://jupyter-client.readthedocs.io/en/stable/messaging.html#display-data
"""
from html import escape
from numbers import Real
from typing import Any, Mapping, Optional

# Checked in order; the first string-valued entry wins.
IMAGE_MIME_TYPES = (
    "image/png",
    "image/jpeg",
    "image/svg+xml",
    "image/bmp",
    "image/gif",
)


def _positive_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and value > 0


def display_data_to_html(data: Mapping[str, Any], metadata: Optional[Mapping[str, Any]] = None) -> Optional[str]:
    """
    Return the HTML form of a display data payload.

    Args:
        data: MIME bundle mapping MIME type to value
        metadata: Per-MIME-type metadata, may carry image height/width

    Returns:
        Optional[str]: An <img> tag for the first supported image type, a <pre>
        block for plain text, or None if the payload has no renderable form.
    """
    metadata = metadata or {}

    for image_type in IMAGE_MIME_TYPES:
        value = data.get(image_type)
        if not isinstance(value, str):
            continue
        alt = data.get("text/plain")
        alt = "" if alt is None else str(alt)
        image = f'<img src="data:{image_type};base64,{escape(value)}" alt="{escape(alt)}"'
        meta = metadata.get(image_type)
        if isinstance(meta, Mapping):
            height = meta.get("height")
            width = meta.get("width")
            if _positive_number(height):
                image += f' height="{height}"'
            if _positive_number(width):
                image += f' width="{width}"'
        image += " />"
        return image

    value = data.get("text/plain")
    if isinstance(value, str):
        return f"<pre>{escape(value)}</pre>"

    return None
