# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
from typing import Dict, Iterable, Type

from .custom_provider import CustomProvider
from .huggingface_provider import HuggingFaceProvider
from .modelscope_provider import ModelScopeProvider
from .provider_interface import ProviderAdapter

lib_logger = logging.getLogger("orchestrator_library")

# Built-in providers; custom servers are added per configuration
PROVIDER_ADAPTERS: Dict[str, Type[ProviderAdapter]] = {
    HuggingFaceProvider.provider_id: HuggingFaceProvider,
    ModelScopeProvider.provider_id: ModelScopeProvider,
}


def build_adapters(custom_providers: Iterable = ()) -> Dict[str, ProviderAdapter]:
    """
    Instantiates the built-in adapters plus one CustomProvider per
    configured server. A custom id that shadows a built-in is skipped.
    """
    adapters: Dict[str, ProviderAdapter] = {
        name: plugin() for name, plugin in PROVIDER_ADAPTERS.items()
    }
    for custom in custom_providers:
        if custom.id in adapters:
            lib_logger.warning(f"Custom provider id '{custom.id}' clashes with a built-in provider, skipping it")
            continue
        adapters[custom.id] = CustomProvider(custom.id, custom.api_url)
    return adapters


__all__ = [
    "PROVIDER_ADAPTERS",
    "ProviderAdapter",
    "HuggingFaceProvider",
    "ModelScopeProvider",
    "CustomProvider",
    "build_adapters",
]
