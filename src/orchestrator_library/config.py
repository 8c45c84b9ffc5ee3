# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Environment-driven configuration.

Credentials are read, never written: each provider gets an ordered list
from <PROVIDER>_API_KEY (comma-separated) and any numbered
<PROVIDER>_API_KEY_<N> variables.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

lib_logger = logging.getLogger("orchestrator_library")

# Keys that configure the host app rather than a provider
RESERVED_KEY_NAMES = {"STUDIO_API_KEY"}

_NUMBERED_KEY = re.compile(r"^(?P<provider>[A-Z0-9_]+?)_API_KEY(?:_(?P<index>\d+))?$")


@dataclass
class CustomProviderConfig:
    id: str
    api_url: str
    token: Optional[str] = None


@dataclass
class OrchestratorSettings:
    poll_interval_seconds: float = 5.0
    state_dir: Optional[str] = ".orchestrator"  # None keeps state in memory
    history_retention_hours: float = 24.0
    request_timeout_seconds: float = 120.0
    custom_providers: List[CustomProviderConfig] = field(default_factory=list)

    @property
    def history_retention_seconds(self) -> float:
        return self.history_retention_hours * 3600

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "OrchestratorSettings":
        env = os.environ if environ is None else environ
        settings = cls()
        settings.poll_interval_seconds = _float_env(env, "POLL_INTERVAL_SECONDS", settings.poll_interval_seconds)
        settings.history_retention_hours = _float_env(env, "HISTORY_RETENTION_HOURS", settings.history_retention_hours)
        settings.request_timeout_seconds = _float_env(env, "REQUEST_TIMEOUT_SECONDS", settings.request_timeout_seconds)

        state_dir = env.get("ORCHESTRATOR_STATE_DIR")
        if state_dir is not None:
            state_dir = state_dir.strip()
            settings.state_dir = None if state_dir.lower() in ("", "memory", ":memory:") else state_dir

        settings.custom_providers = parse_custom_providers(env.get("CUSTOM_PROVIDERS", ""))
        return settings


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        lib_logger.warning(f"Invalid value for {name}: {raw!r}, using {default}")
        return default
    if value <= 0:
        lib_logger.warning(f"{name} must be positive, got {value}, using {default}")
        return default
    return value


def parse_credential_list(raw: Optional[str]) -> List[str]:
    """Splits a comma-separated credential list, trimming blanks and duplicates."""
    if not raw:
        return []
    credentials: List[str] = []
    for part in raw.split(","):
        part = part.strip()
        if part and part not in credentials:
            credentials.append(part)
    return credentials


def parse_custom_providers(raw: str) -> List[CustomProviderConfig]:
    """Parses the CUSTOM_PROVIDERS JSON list. Bad entries are logged and skipped."""
    raw = (raw or "").strip()
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        lib_logger.warning(f"Invalid JSON in CUSTOM_PROVIDERS: {e}")
        return []
    if not isinstance(data, list):
        lib_logger.warning(f"CUSTOM_PROVIDERS must be a list, got {type(data).__name__}")
        return []

    providers = []
    for i, entry in enumerate(data):
        if not isinstance(entry, dict) or not entry.get("id") or not entry.get("api_url"):
            lib_logger.warning(f"Custom provider {i} needs 'id' and 'api_url', skipping: {entry}")
            continue
        providers.append(
            CustomProviderConfig(
                id=str(entry["id"]).strip().lower(),
                api_url=str(entry["api_url"]).strip(),
                token=(entry.get("token") or None),
            )
        )
    return providers


def load_credentials_from_env(
    environ: Optional[Mapping[str, str]] = None,
    custom_providers: Optional[List[CustomProviderConfig]] = None,
) -> Dict[str, List[str]]:
    """
    Collects provider credentials from the environment.

    HUGGINGFACE_API_KEY="a,b" and HUGGINGFACE_API_KEY_1="c" both feed
    provider "huggingface"; the unnumbered variable comes first, numbered
    ones follow in numeric order.
    """
    env = os.environ if environ is None else environ
    found: Dict[str, List[tuple]] = {}
    for key, value in env.items():
        if key in RESERVED_KEY_NAMES:
            continue
        match = _NUMBERED_KEY.match(key)
        if not match:
            continue
        provider = match.group("provider").lower()
        index = int(match.group("index")) if match.group("index") else -1
        found.setdefault(provider, []).append((index, value))

    credentials: Dict[str, List[str]] = {}
    for provider, entries in found.items():
        ordered: List[str] = []
        for _, value in sorted(entries, key=lambda item: item[0]):
            for credential in parse_credential_list(value):
                if credential not in ordered:
                    ordered.append(credential)
        if ordered:
            credentials[provider] = ordered

    for custom in custom_providers or []:
        if custom.token:
            bucket = credentials.setdefault(custom.id, [])
            for credential in parse_credential_list(custom.token):
                if credential not in bucket:
                    bucket.append(credential)

    return credentials
