"""Core exception classes for the application."""


class NotFoundError(Exception):
    """Raised when a resource is not found."""


class ValidationError(Exception):
    """Raised when validation fails."""


class ConfigurationError(Exception):
    """Raised when required configuration or credentials are missing.

    Configuration errors are fatal and are never retried.
    """


class CredentialValidationError(ConfigurationError):
    """Raised when the credentials required by an agent are missing."""


class SandboxConfigurationError(ConfigurationError):
    """Raised when sandbox provider credentials are not configured."""


class SandboxProvisionError(Exception):
    """Raised when the remote provider fails to create a sandbox."""


class SandboxUnavailableError(Exception):
    """Raised when a task's sandbox can no longer be reached."""


class InvalidTransitionError(Exception):
    """Raised when a task status change is not an allowed edge."""


class BranchNameError(Exception):
    """Raised when a generated branch name cannot be produced."""


class GitHubError(Exception):
    """Raised when a GitHub API call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PullRequestError(Exception):
    """Raised when a pull-request operation fails."""


class AgentExecutionError(Exception):
    """Raised when a coding agent run fails."""
