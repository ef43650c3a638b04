from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from stylesafe.services.errors import ValidationError


logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer, got {raw!r}.") from exc
    if value < minimum:
        raise ValidationError(f"{name} must be >= {minimum}, got {value}.")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be a number, got {raw!r}.") from exc
    if value < 0:
        raise ValidationError(f"{name} must not be negative, got {value}.")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValidationError(f"{name} must be a boolean flag, got {raw!r}.")


@dataclass(frozen=True)
class Settings:
    """
    Process-wide configuration read from the environment.

    Budget values feed the preflight validator; guard, retry, and concurrency
    values feed the job manager. Everything has a working default so the
    service starts without a `.env` file (using the mock provider).
    """

    # Preflight budgets.
    job_max_bytes: int = 200 * 1024 * 1024
    item_max_bytes: int = 8 * 1024 * 1024
    max_images_per_job: int = 2000
    max_rows_per_chunk: int = 500
    max_refs_per_item: int = 8
    preflight_compress: bool = True
    preflight_split: bool = True
    ref_target_bytes: int = 1024 * 1024
    # Style guard.
    style_guard_hamming_max: int = 15
    style_guard_max_retries: int = 2
    # Provider retry/backoff.
    provider_max_retries: int = 3
    provider_base_delay: float = 2.0
    # Concurrency.
    max_in_flight: int = 2
    chunk_concurrency: int = 2
    poll_interval_seconds: float = 2.0
    poll_max_wait_seconds: float = 120.0
    # Storage.
    output_dir: Path = Path("storage/outputs")
    manifest_path: Path = Path("storage/manifest.jsonl")
    # Provider.
    replicate_api_token: str | None = None
    replicate_model: str = "black-forest-labs/flux-schnell"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        hamming_max = _int(env, "STYLE_GUARD_HAMMING_MAX", cls.style_guard_hamming_max)
        if hamming_max > 64:
            raise ValidationError(f"STYLE_GUARD_HAMMING_MAX must be within 0..64, got {hamming_max}.")
        return cls(
            job_max_bytes=_int(env, "JOB_MAX_BYTES", cls.job_max_bytes, minimum=1),
            item_max_bytes=_int(env, "ITEM_MAX_BYTES", cls.item_max_bytes, minimum=1),
            max_images_per_job=_int(env, "MAX_IMAGES_PER_JOB", cls.max_images_per_job, minimum=1),
            max_rows_per_chunk=_int(env, "MAX_ROWS_PER_CHUNK", cls.max_rows_per_chunk, minimum=1),
            max_refs_per_item=_int(env, "MAX_REFS_PER_ITEM", cls.max_refs_per_item),
            preflight_compress=_bool(env, "PREFLIGHT_COMPRESS", cls.preflight_compress),
            preflight_split=_bool(env, "PREFLIGHT_SPLIT", cls.preflight_split),
            ref_target_bytes=_int(env, "REF_TARGET_BYTES", cls.ref_target_bytes, minimum=1),
            style_guard_hamming_max=hamming_max,
            style_guard_max_retries=_int(env, "STYLE_GUARD_MAX_RETRIES", cls.style_guard_max_retries),
            provider_max_retries=_int(env, "PROVIDER_MAX_RETRIES", cls.provider_max_retries),
            provider_base_delay=_float(env, "PROVIDER_BASE_DELAY", cls.provider_base_delay),
            max_in_flight=_int(env, "MAX_IN_FLIGHT", cls.max_in_flight, minimum=1),
            chunk_concurrency=_int(env, "CHUNK_CONCURRENCY", cls.chunk_concurrency, minimum=1),
            poll_interval_seconds=_float(env, "POLL_INTERVAL_SECONDS", cls.poll_interval_seconds),
            poll_max_wait_seconds=_float(env, "POLL_MAX_WAIT_SECONDS", cls.poll_max_wait_seconds),
            output_dir=Path(env.get("OUTPUT_DIR") or cls.output_dir),
            manifest_path=Path(env.get("MANIFEST_PATH") or cls.manifest_path),
            replicate_api_token=env.get("REPLICATE_API_TOKEN") or None,
            replicate_model=env.get("REPLICATE_MODEL") or cls.replicate_model,
            log_level=(env.get("LOG_LEVEL") or cls.log_level).upper(),
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Return the process-wide settings instance.

    Read lazily so the `.env` file loaded in `stylesafe.main` is visible.
    """
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
        logger.info(
            "Settings loaded: job_max_bytes=%s item_max_bytes=%s max_images_per_job=%s "
            "hamming_max=%s max_in_flight=%s",
            _settings.job_max_bytes,
            _settings.item_max_bytes,
            _settings.max_images_per_job,
            _settings.style_guard_hamming_max,
            _settings.max_in_flight,
        )
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (tests and reloads)."""
    global _settings
    _settings = None
