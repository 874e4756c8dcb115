"""Environment and preflight checks for running the usage pipeline."""

from __future__ import annotations

import os
import socket
import sys
from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from tokenusage.core.config import CollectionMode, PipelineSettings

MIN_PYTHON = (3, 9)


@dataclass
class DoctorResult:
    ok: bool
    messages: List[str]


def _python_version_tuple() -> Tuple[int, int, int]:
    v = sys.version_info
    return (v.major, v.minor, v.micro)


def _check_python_version(errors: List[str]) -> None:
    current = _python_version_tuple()
    if current[:2] < MIN_PYTHON:
        errors.append(
            f"Python {current[0]}.{current[1]} is unsupported. "
            f"Use Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]} or newer."
        )


def _check_settings(env: Mapping[str, str], errors: List[str], warnings: List[str]) -> None:
    mode = env.get("MODE", "local").strip().lower()
    if mode not in {"local", "test", "prod", "production"}:
        errors.append("MODE must be one of: local, test, prod, production.")
        return

    try:
        settings = PipelineSettings.from_env(env)
    except ValueError as exc:
        errors.append(str(exc))
        return

    if mode in {"prod", "production"}:
        if not env.get("DATABASE_URL", "").strip():
            errors.append(f"MODE={mode} requires `DATABASE_URL` to be set and non-empty.")
        if settings.mode is CollectionMode.SYNC:
            warnings.append(
                f"MODE={mode} with USAGE_COLLECTION_MODE=sync: usage is persisted inline "
                "on the response path."
            )

    scheme = urlparse(settings.database_url).scheme
    if scheme not in {"postgres", "postgresql"}:
        errors.append(f"DATABASE_URL must be a postgresql:// URL, got scheme `{scheme or '(none)'}`.")

    if not settings.provider_paths:
        errors.append("USAGE_PROVIDER_PATHS is set but contains no paths; nothing would be captured.")


def _check_port_binding(env: Mapping[str, str], errors: List[str]) -> None:
    host = env.get("HOST", "0.0.0.0").strip() or "0.0.0.0"
    raw_port = env.get("PORT", "8000").strip() or "8000"

    try:
        port = int(raw_port)
    except ValueError:
        errors.append(f"PORT must be an integer, got `{raw_port}`.")
        return

    if not (0 < port < 65536):
        errors.append(f"PORT must be between 1 and 65535, got `{port}`.")
        return

    bind_host = "127.0.0.1" if host in {"0.0.0.0", "localhost", ""} else host
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((bind_host, port))
    except OSError as exc:
        errors.append(
            f"PORT/HOST conflict: cannot bind {bind_host}:{port} ({exc}). "
            "Pick a free port, e.g. `PORT=8010`."
        )
    finally:
        sock.close()


def run_doctor(env: Optional[Mapping[str, str]] = None) -> DoctorResult:
    env_map: Mapping[str, str] = os.environ if env is None else env
    errors: List[str] = []
    warnings: List[str] = []

    _check_python_version(errors)
    _check_settings(env_map, errors, warnings)
    _check_port_binding(env_map, errors)

    messages: List[str] = []
    if errors:
        messages.append("Doctor found configuration issues:")
        for i, msg in enumerate(errors, 1):
            messages.append(f"{i}. {msg}")
        messages.append("Fix the items above and rerun `python -m scripts.doctor`.")
    else:
        messages.append("Doctor checks passed.")

    if warnings:
        messages.append("Warnings:")
        for i, msg in enumerate(warnings, 1):
            messages.append(f"- {msg}")

    return DoctorResult(ok=not errors, messages=messages)


def main() -> int:
    result = run_doctor()
    print("\n".join(result.messages))
    return 0 if result.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
