"""
Exception Hierarchy
===================

Categorized errors raised by the retrieval pipeline.

Error Categories:
    - CONFIGURATION: Invalid builder/engine setup, raised before any network call
    - OPERATION: Best-effort stage failure (semantic search, LLM rerank),
      absorbed by the pipeline engine
    - BATCH: Structured LLM provider or decode failure, always propagated
    - STORE: Graph store query failure
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Categorization of errors for pipeline failure policy."""

    CONFIGURATION = "configuration"
    OPERATION = "operation"
    BATCH = "batch"
    STORE = "store"


class KgflowError(Exception):
    """
    Base exception for all pipeline errors.

    Args:
        message: Human-readable error description
        category: Error category driving the failure policy
        technical_details: Additional information for debugging
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.OPERATION,
        technical_details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.technical_details = technical_details or {}


class ConfigurationError(KgflowError):
    """Invalid configuration detected before execution."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.CONFIGURATION, **kwargs)


class OperationError(KgflowError):
    """A best-effort pipeline stage failed."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        super().__init__(message, category=ErrorCategory.OPERATION, **kwargs)
        self.operation = operation


class StoreQueryError(KgflowError):
    """Graph store rejected or failed a query."""

    def __init__(self, message: str, query: Optional[str] = None, **kwargs):
        super().__init__(message, category=ErrorCategory.STORE, **kwargs)
        self.query = query


class BatchExecutionError(KgflowError):
    """
    A structured LLM batch call failed.

    Args:
        message: Error description
        batch_index: Index of the failing batch, if known
    """

    def __init__(self, message: str, batch_index: Optional[int] = None, **kwargs):
        super().__init__(message, category=ErrorCategory.BATCH, **kwargs)
        self.batch_index = batch_index


class LLMProviderError(BatchExecutionError):
    """The LLM provider returned an error or no content."""

    def __init__(self, message: str, status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status = status


class OutputDecodeError(BatchExecutionError):
    """
    An LLM response could not be decoded against the output schema.

    Args:
        message: Error description
        output_format: Format that was expected (xml, json, yaml)
        raw_response: The offending response text (truncated)
    """

    def __init__(
        self,
        message: str,
        output_format: Optional[str] = None,
        raw_response: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.output_format = output_format
        self.raw_response = raw_response[:2000] if raw_response else raw_response
