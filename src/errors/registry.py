"""Error code registry with E-XXXX format codes.

This module defines the error code system for Dreamie Exchange, organizing
errors into categories:
- E-1xxx: Trade state conflicts (guard violations)
- E-2xxx: Validation errors
- E-3xxx: Messaging errors
- E-4xxx: System/internal errors
- E-5xxx: Authorization errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    TRADE_STATE = "trade_state"  # E-1xxx: Guard violations
    VALIDATION = "validation"  # E-2xxx: Validation errors
    MESSAGING = "messaging"  # E-3xxx: Chat errors
    SYSTEM = "system"  # E-4xxx: System/internal errors
    AUTH = "auth"  # E-5xxx: Authorization errors


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


# Error registry - all defined error codes
ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Trade state conflicts (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.TRADE_STATE,
        title="Trade No Longer Available",
        message_template="Trade {trade_id} cannot be {action} in its current state.",
        remediation="Refresh the trade; another party may have acted first.",
    ),
    "E-1002": ErrorCode(
        code="E-1002",
        category=ErrorCategory.TRADE_STATE,
        title="Duplicate Active Request",
        message_template="You already have an active request for {item_name}.",
        remediation="Wait for the existing request to finish or withdraw it first.",
    ),
    "E-1003": ErrorCode(
        code="E-1003",
        category=ErrorCategory.TRADE_STATE,
        title="Completion Not Yet Allowed",
        message_template="The tradee may complete trade {trade_id} only after {hours} hours at step 3.",
        remediation="Ask the trader to mark the trade complete, or try again later.",
    ),
    "E-1004": ErrorCode(
        code="E-1004",
        category=ErrorCategory.TRADE_STATE,
        title="Trade Still Active",
        message_template="Trade {trade_id} has not been inactive for {hours} hours.",
        remediation="Only inactive trades can be expired. Try again later.",
    ),
    "E-1005": ErrorCode(
        code="E-1005",
        category=ErrorCategory.TRADE_STATE,
        title="Report Already Handled",
        message_template="Report state of {target} has already changed.",
        remediation="Refresh and review the current report state.",
    ),
    # Validation errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Invalid Transfer Code",
        message_template="Transfer code must be {min_length}-{max_length} letters or digits.",
        remediation="Re-enter the code exactly as the game shows it.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.VALIDATION,
        title="Invalid Text",
        message_template="{field} must be between 1 and {max_length} characters.",
        remediation="Shorten or fill in the text and retry.",
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.VALIDATION,
        title="Invalid Offer",
        message_template="Offer is not valid: {details}",
        remediation="Offer a non-negative amount of bells or NMT, or no offer.",
    ),
    "E-2004": ErrorCode(
        code="E-2004",
        category=ErrorCategory.VALIDATION,
        title="Illegal Status",
        message_template="Status '{status}' is not allowed for {target} in state '{current}'.",
        remediation="Pick one of the statuses allowed for this category.",
    ),
    # Messaging errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.MESSAGING,
        title="Message Not In Conversation",
        message_template="Message {message_id} does not belong to conversation {conversation_id}.",
        remediation="Reload the conversation and retry.",
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Store Unavailable",
        message_template="Database operation failed: {details}",
        remediation="Retry the operation. Contact support if the issue persists.",
        is_retryable=True,
    ),
    "E-4004": ErrorCode(
        code="E-4004",
        category=ErrorCategory.SYSTEM,
        title="Not Found",
        message_template="{resource_type} '{identifier}' not found.",
        remediation="Check the identifier and retry.",
    ),
    # Authorization errors (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.AUTH,
        title="Not Permitted",
        message_template="User {actor_id} may not {action}.",
        remediation="Only the parties of a trade may perform this step.",
    ),
    "E-5002": ErrorCode(
        code="E-5002",
        category=ErrorCategory.AUTH,
        title="Privileged Operation",
        message_template="User {actor_id} lacks moderation privileges.",
        remediation="Ask a full administrator to perform this action.",
    ),
    "E-5003": ErrorCode(
        code="E-5003",
        category=ErrorCategory.AUTH,
        title="Account Restricted",
        message_template="User {actor_id} is restricted from {action}.",
        remediation="Contact a moderator through a help ticket.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in the specified category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]


def render_error(code: str, **context: object) -> str:
    """Format a registry message template with context.

    Missing placeholders leave the template unformatted rather than raising.

    Args:
        code: Error code in E-XXXX format.
        **context: Values for the message template.

    Returns:
        Formatted message, or "Unknown error: <code>" for unknown codes.
    """
    error_def = get_error(code)
    if error_def is None:
        return f"Unknown error: {code}"
    try:
        return error_def.message_template.format(**context)
    except KeyError:
        return error_def.message_template
