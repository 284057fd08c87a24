"""Error types and error display for the enterprise authorization core.

Two families of errors surface from this package: configuration errors,
which are fatal and name the offending config path, and authorization
denials, which carry structured context and all derive from the shared
``AuthorizationDenied`` sentinel so callers can test for them with
``isinstance`` instead of matching strings.
"""

import sys
from typing import Any, Iterator, List, Optional, Self, Sequence, Type

from rich.console import Console
from rich.panel import Panel

console = Console(stderr=True)

EXIT_FAILURE = 1
EXIT_DENIED = 3
EXIT_INTERRUPTED = 130


class EnterpriseError(Exception):
    """Base exception class for enterprise errors."""

    def __init__(self: Self, message: str, suggestions: Optional[List[str]] = None) -> None:
        """Initialize enterprise error.

        Args:
            message: The error message to display.
            suggestions: Optional list of recovery suggestions.
        """
        super().__init__(message)
        self.message = message
        self.suggestions = suggestions or []
        self.trace: Any = None

    def with_trace(self: Self, trace: Any) -> Self:
        """Attach the trace produced before this error was raised."""
        self.trace = trace
        return self


class ConfigError(EnterpriseError):
    """Configuration-related errors."""
    pass


class ConfigValidationError(ConfigError):
    """Raised when configuration validation fails."""
    pass


class ConfigNotFoundError(ConfigError):
    """Raised when the configuration file does not exist."""
    pass


class LegacyConfigError(ConfigError):
    """Raised when a legacy single-profile document is found where an
    enterprise document was expected."""
    pass


class RequestError(EnterpriseError):
    """Raised when a caller supplies a malformed request."""
    pass


class ApprovalError(EnterpriseError):
    """Raised when an approval token cannot be issued or decoded."""
    pass


class AuditError(EnterpriseError):
    """Raised when an audit event cannot be recorded."""
    pass


class AuditInvariantViolation(AuditError):
    """Raised when recording an event would break audit ordering rules."""
    pass


class AuthorizationDenied(EnterpriseError):
    """Sentinel base class for every authorization or secret denial."""

    def __init__(self: Self, message: str = "authorization denied",
                 suggestions: Optional[List[str]] = None) -> None:
        super().__init__(message, suggestions)


class DenyError(AuthorizationDenied):
    """A denial with enough context for machine-readable reporting."""

    def __init__(
        self: Self,
        principal: str,
        reason: str,
        capability: str = "",
        org_name: str = "",
        workspace_name: str = "",
        command: str = "",
    ) -> None:
        reason = (reason or "").strip()
        message = f"authorization denied: {reason}" if reason else "authorization denied"
        super().__init__(message)
        self.principal = principal
        self.command = command
        self.capability = capability
        self.org_name = org_name
        self.workspace_name = workspace_name
        self.reason = reason

    def to_dict(self: Self) -> dict:
        return {
            'principal': self.principal,
            'command': self.command,
            'capability': self.capability,
            'org_name': self.org_name,
            'workspace_name': self.workspace_name,
            'reason': self.reason,
        }


class ExecutionFailedError(EnterpriseError):
    """Raised when the caller-supplied action fails.

    The original exception is chained as ``__cause__``.
    """
    pass


class CombinedError(EnterpriseError):
    """Keeps an in-flight failure together with a later audit failure."""

    def __init__(self: Self, errors: Sequence[BaseException]) -> None:
        self.errors = tuple(errors)
        super().__init__("; ".join(str(error) for error in self.errors))


def combine_errors(primary: Optional[BaseException], secondary: Optional[BaseException]) -> Optional[BaseException]:
    """Combine two optional errors without discarding either.

    Args:
        primary: The failure already in flight.
        secondary: A failure raised while handling it (usually auditing).

    Returns:
        Whichever error is set, a ``CombinedError`` when both are, or None.
    """
    if primary is None:
        return secondary
    if secondary is None:
        return primary
    combined = CombinedError([primary, secondary])
    combined.trace = getattr(primary, 'trace', None)
    return combined


def iter_errors(error: BaseException) -> Iterator[BaseException]:
    """Yield an error, the members of any combined error and their causes."""
    seen = set()
    pending = [error]
    while pending:
        current = pending.pop(0)
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        if isinstance(current, CombinedError):
            pending.extend(current.errors)
        if current.__cause__ is not None:
            pending.append(current.__cause__)


def find_error(error: BaseException, error_type: Type[BaseException]) -> Optional[BaseException]:
    """Return the first error of ``error_type`` found in an error chain."""
    for candidate in iter_errors(error):
        if isinstance(candidate, error_type):
            return candidate
    return None


def is_authorization_denied(error: BaseException) -> bool:
    return find_error(error, AuthorizationDenied) is not None


class ErrorHandler:
    """Displays errors with recovery suggestions."""

    GENERIC_SUGGESTIONS = [
        "Inspect the enterprise config: meta enterprise context",
        "Check role bindings for the principal: meta enterprise policy eval",
        "Run with --verbose for more detail",
    ]

    def get_suggestions(self: Self, error: BaseException) -> List[str]:
        """Get recovery suggestions for an error.

        Args:
            error: The exception to analyze.

        Returns:
            List of recovery suggestions.
        """
        suggestions: List[str] = []
        for candidate in iter_errors(error):
            if isinstance(candidate, EnterpriseError):
                suggestions.extend(candidate.suggestions)
        if suggestions:
            return suggestions
        if is_authorization_denied(error):
            return [
                "Ask an administrator to bind a role granting the capability",
                "Confirm the --org and --workspace selection",
            ]
        return list(self.GENERIC_SUGGESTIONS)

    def display_error(
        self: Self,
        error: BaseException,
        context: Optional[str] = None,
        show_suggestions: bool = True
    ) -> None:
        """Display an error with formatting and suggestions.

        Args:
            error: The exception that occurred.
            context: Optional context about what was being attempted.
            show_suggestions: Whether to show recovery suggestions.
        """
        content = []

        if context:
            content.append(f"[bold]Context:[/bold] {context}")
            content.append("")

        if isinstance(error, CombinedError):
            content.append("[bold red]Errors:[/bold red]")
            for member in error.errors:
                content.append(f"  - {member}")
        else:
            content.append(f"[bold red]Error:[/bold red] {error}")

        if show_suggestions:
            suggestions = self.get_suggestions(error)
            if suggestions:
                content.append("")
                content.append("[bold blue]Suggested solutions:[/bold blue]")
                for i, suggestion in enumerate(suggestions, 1):
                    content.append(f"  {i}. {suggestion}")

        title = "Authorization Denied" if is_authorization_denied(error) else "Enterprise Error"
        console.print(Panel(
            "\n".join(content),
            title=f"[bold red]{title}[/bold red]",
            border_style="red",
            expand=False
        ))


def exit_code_for(error: BaseException) -> int:
    return EXIT_DENIED if is_authorization_denied(error) else EXIT_FAILURE


def handle_exception(error: BaseException, context: Optional[str] = None) -> None:
    """Display an error and terminate with a status matching its family.

    Args:
        error: The exception that occurred.
        context: Optional context about what was being attempted.
    """
    ErrorHandler().display_error(error, context)
    sys.exit(exit_code_for(error))


def handle_keyboard_interrupt() -> None:
    """Handle Ctrl+C gracefully."""
    console.print("\n[yellow]Operation cancelled by user[/yellow]")
    sys.exit(EXIT_INTERRUPTED)
