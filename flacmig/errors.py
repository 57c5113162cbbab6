#!/usr/bin/env python3
"""
flacmig.errors

Failure taxonomy for the migration pipeline.

Per-track failures are *recorded* on the track rather than raised: the class
naming the category travels as ``Track.failure_kind`` and ``ItemResult.kind``
and is written to the error report. Preflight, ledger writes and illegal transitions raise.
"""
from __future__ import annotations


class MigrationError(Exception):
    """Base class for every flacmig error."""


class ProbeFailure(MigrationError):
    """Duration could not be determined for a file."""


class ConversionFailure(MigrationError):
    """Codec tool failed, timed out, or the target appeared mid-conversion."""


class VerificationFailure(MigrationError):
    """Output missing, duration mismatch beyond tolerance, or decode error."""


class TargetCollision(MigrationError):
    """Another source in the run maps to the same target file."""


class PersistenceFailure(MigrationError):
    """Ledger could not be written."""


class PreflightFailure(MigrationError):
    """Invalid or overlapping source/target directories. Fatal."""


class InvalidTransition(MigrationError):
    """A track was asked to move to a state its current state does not allow."""

    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(f"Illegal status transition {current.value} -> {requested.value}")
