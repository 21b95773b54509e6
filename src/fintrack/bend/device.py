from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from pathlib import Path

logger = logging.getLogger(__name__)

DEVICE_HASH_FILENAME = "device_hash"


@dataclass(frozen=True)
class DeviceProfile:
    device_id: str
    device_type: str = "Web"
    device_location: str = "Default"

    def with_device_id(self, device_id: str) -> "DeviceProfile":
        return replace(self, device_id=device_id)


def generate_device_id() -> str:
    return str(uuid.uuid4())


def generate_request_id() -> str:
    return str(uuid.uuid4())


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def load_or_create_device_id(config_dir: Path) -> str:
    """
    Stable per-installation device id stored as a bare string in
    <config_dir>/device_hash. Regenerated only when the file is absent,
    empty or unreadable.
    """
    path = Path(config_dir) / DEVICE_HASH_FILENAME

    try:
        existing = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        existing = ""
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Device id file %s is unreadable (%s); regenerating", path, e)
        existing = ""

    if existing and _is_uuid(existing):
        return existing

    device_id = generate_device_id()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(device_id, encoding="utf-8")
    logger.info("Generated new device id in %s", path)
    return device_id
