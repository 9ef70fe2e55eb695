"""Validation package."""

from finledger.validation.validator import IntentValidator

__all__ = ["IntentValidator"]
