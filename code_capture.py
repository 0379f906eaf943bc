import io
import logging
import re
from typing import Callable, Iterable, Optional

import pytesseract
from PIL import Image, UnidentifiedImageError

from errors import CodeCaptureError

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# --- Configuration ---
# pytesseract needs the Tesseract binary on PATH. On Windows set
# pytesseract.pytesseract.tesseract_cmd to the install location.

CODE_PATTERN = re.compile(r"\bRX\d+\b")


def detect_code_from_input(text: str) -> Optional[str]:
    """Accepts typed or pasted input that looks like a prescription code (RX plus at least one character)."""
    if text and text.startswith("RX") and len(text) > 3:
        return text
    return None


def find_code_in_text(text: str) -> Optional[str]:
    """Returns the first RX<digits> token in OCR output, if any."""
    match = CODE_PATTERN.search(text or "")
    return match.group(0) if match else None


def extract_code_from_image(image_bytes: bytes) -> Optional[str]:
    """
    Reads the printed prescription id from a photo or scan of a prescription.

    Args:
        image_bytes: The image file contents (PNG, JPG, ...).

    Returns:
        The first RX<digits> code found in the image text, or None.

    Raises:
        CodeCaptureError: the bytes are not an image or Tesseract is not installed.
    """
    try:
        image = Image.open(io.BytesIO(image_bytes))
    except (UnidentifiedImageError, OSError) as e:
        logger.error(f"Could not open image for code capture: {e}")
        raise CodeCaptureError("Uploaded file is not a readable image.") from e

    try:
        logger.info("Performing OCR using Tesseract...")
        text = pytesseract.image_to_string(image)
    except pytesseract.TesseractNotFoundError as e:
        logger.error("Tesseract is not installed or not in your PATH. Please install Tesseract.")
        raise CodeCaptureError("Code capture failed: Tesseract not found.") from e

    logger.info(f"OCR Raw Text (first 200 chars): {text[:200]}...")
    code = find_code_in_text(text)
    if code:
        logger.info(f"Detected verification code {code}")
    else:
        logger.info("No verification code found in image.")
    return code


def scan_frames(frames: Iterable[bytes], on_detected: Callable[[str], None]) -> Optional[str]:
    """
    Feeds camera frames through OCR until one of them contains a code, then
    calls on_detected with it and stops. Frames that cannot be read are skipped.

    Returns:
        The detected code, or None if the frames ran out first.
    """
    for count, frame in enumerate(frames, start=1):
        try:
            code = extract_code_from_image(frame)
        except CodeCaptureError as e:
            logger.warning(f"Skipping frame {count}: {e}")
            continue
        if code:
            on_detected(code)
            return code
    logger.info("Scanning for codes finished without a result.")
    return None
