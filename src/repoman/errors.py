"""Exception hierarchy shared by every repoman operation."""

from .constants import AUTH_HELP, AUTH_HINTS


class RepomanError(Exception):
    """Base class for all errors surfaced to the user."""


class NotFoundError(RepomanError):
    """A repository, pristine, clone, branch or alias does not exist."""


class AlreadyExistsError(RepomanError):
    """A repository, pristine or clone is already present."""


class InvalidInputError(RepomanError):
    """Unparseable URL, empty URL list, or an unknown agent action."""


class AuthenticationError(RepomanError):
    """The remote rejected every credential offered for a repository."""

    def __init__(self, repo_name: str):
        self.repo_name = repo_name
        super().__init__(f"Authentication failed for '{repo_name}'\n\n{AUTH_HELP}")


class BackendError(RepomanError):
    """Any other failure reported by the version-control backend."""


class GitCommandError(BackendError):
    """A git subprocess exited with a non-zero status.

    Attributes:
        args_list (list[str]): The git arguments that failed.
        stderr (str): Captured standard error, if any.
    """

    def __init__(self, args_list: list[str], stderr: str = ""):
        self.args_list = args_list
        self.stderr = stderr.strip()
        detail = self.stderr or "exit status non-zero"
        super().__init__(f"Git error (git {' '.join(args_list)}): {detail}")


class CredentialError(BackendError):
    """The credential callback refused to supply a credential."""


class StorageError(RepomanError):
    """Reading, writing or decoding vault or metadata state failed."""


class ProcessControlError(RepomanError):
    """The background agent is already running, not running, or failed to start."""


def is_auth_failure(message: str) -> bool:
    """Reports whether a backend error message looks like rejected credentials."""
    lowered = message.lower()
    return any(hint in lowered for hint in AUTH_HINTS)


def classify_git_error(err: BackendError, repo_name: str) -> RepomanError:
    """Re-labels a backend failure as an AuthenticationError where appropriate.

    Args:
        err (BackendError): The failure raised by the git layer.
        repo_name (str): The repository the operation was acting on.

    Returns:
        RepomanError: Either an AuthenticationError or the original error.
    """
    if isinstance(err, CredentialError):
        return AuthenticationError(repo_name)
    text = err.stderr if isinstance(err, GitCommandError) else str(err)
    if is_auth_failure(text):
        return AuthenticationError(repo_name)
    return err
