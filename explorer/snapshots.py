# snapshots.py
import base64
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DATA_URI_PREFIX = "data:image/png;base64,"


def to_data_uri(image: Optional[str]) -> Optional[str]:
    if not image:
        return None
    return image if image.startswith("data:") else f"{DATA_URI_PREFIX}{image}"


def strip_data_uri(image: str) -> str:
    return image.split(",", 1)[1] if image.startswith("data:") else image


def save_screenshot(image: str, output_dir: str, session_id: str) -> Optional[str]:
    """スクリーンショットを <output_dir>/<session_id>/screenshots に保存し、相対パスを返す"""
    screenshot_dir = Path(output_dir) / session_id / "screenshots"
    screenshot_dir.mkdir(parents=True, exist_ok=True)
    file_path = screenshot_dir / f"screenshot_{datetime.now().strftime('%Y%m%d%H%M%S%f')}.png"
    file_path.write_bytes(base64.b64decode(strip_data_uri(image)))
    logger.info(f"Screenshot saved: {file_path}")
    return str(file_path.relative_to(output_dir))
