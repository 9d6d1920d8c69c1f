"""Interfaces package for adapters.

Define interfaces para transporte, puertos y cargador de flash."""

from .services import (
    ConnectMode,
    FlashLoader,
    LoaderFactory,
    PortProvider,
    ProgressSink,
    ResetPolicy,
    Transport,
)

__all__ = [
    "ConnectMode",
    "FlashLoader",
    "LoaderFactory",
    "PortProvider",
    "ProgressSink",
    "ResetPolicy",
    "Transport",
]
