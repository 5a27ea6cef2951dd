import base64
import binascii

import cv2 # type: ignore
import numpy as np # type: ignore

from backend.config import (
    SIGNATURE_INK_THRESHOLD,
    SIGNATURE_MAX_BYTES,
    SIGNATURE_MIN_INK_PIXELS,
)

ALLOWED_MEDIA_TYPES = ("image/png", "image/jpeg")


def decode_data_url(data_url: str):
    """
    Returns:
      (raw_bytes:bytes|None, reason:str|None)
    """
    header, sep, body = (data_url or "").strip().partition(",")
    if not sep or not header.startswith("data:"):
        return None, "not_data_url"

    media_type, _, encoding = header[len("data:"):].partition(";")
    if media_type not in ALLOWED_MEDIA_TYPES or encoding != "base64":
        return None, "not_data_url"

    # base64 inflates by 4/3; reject before decoding anything huge
    if len(body) > (SIGNATURE_MAX_BYTES * 4) // 3 + 4:
        return None, "too_large"

    try:
        raw = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError):
        return None, "bad_base64"

    if len(raw) > SIGNATURE_MAX_BYTES:
        return None, "too_large"
    return raw, None


def count_ink_pixels(image) -> int:
    # canvas exports are transparent where nothing was drawn
    if image.ndim == 2:
        mask = image < SIGNATURE_INK_THRESHOLD
    elif image.shape[2] == 4:
        gray = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        mask = (image[:, :, 3] > 0) & (gray < SIGNATURE_INK_THRESHOLD)
    else:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        mask = gray < SIGNATURE_INK_THRESHOLD
    return int(np.count_nonzero(mask))


def inspect_signature(data_url: str):
    """
    Returns:
      (ok:bool, reason:str|None)
    """
    raw, reason = decode_data_url(data_url)
    if raw is None:
        return False, reason

    image = cv2.imdecode(np.frombuffer(raw, np.uint8), cv2.IMREAD_UNCHANGED)
    if image is None:
        return False, "undecodable"

    if count_ink_pixels(image) < SIGNATURE_MIN_INK_PIXELS:
        return False, "blank"

    return True, None
