#!/usr/bin/env python3
"""
flacmig – resumable FLAC -> MP3 library migration (package).
"""
__version__ = "0.1.0"

__all__ = [
    "models",
    "config",
    "process",
    "probe",
    "ledger",
    "scanner",
    "estimator",
    "worker_queue",
    "converter",
    "verifier",
    "cleanup",
    "report",
    "progress",
    "pipeline",
]
