from urllib.parse import urlencode

import qrcode
import qrcode.image.svg


def setup_url(origin: str, tag: str, char: str = "") -> str:
    """The URL written to an NFC sticker (and its printed QR fallback)."""
    params = {"tag": tag}
    if char:
        params["char"] = char
    return f"{origin.rstrip('/')}/setup?{urlencode(params)}"


def make_qr_svg_bytes(payload: str) -> bytes:
    img = qrcode.make(payload, image_factory=qrcode.image.svg.SvgImage)
    return img.to_string()
