import enum
import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable
from urllib.parse import urlsplit

from .constants import APP_NAME
from .credentials import Credential, CredentialKind, CredentialType
from .errors import BackendError, GitCommandError, is_auth_failure

logger = logging.getLogger(APP_NAME)


class MergeAnalysis(enum.Enum):
    """Relationship between a local branch tip and an incoming commit."""

    UP_TO_DATE = "up_to_date"
    FAST_FORWARD = "fast_forward"
    DIVERGED = "diverged"
    UNBORN = "unborn"


@dataclass(frozen=True)
class TransferProgress:
    """A single progress event from a clone or fetch.

    Attributes:
        phase (str): 'receiving' while objects arrive, then 'indexing'.
        percent (int): Completion of the current phase.
        done (int): Objects (or deltas) processed so far.
        total (int): Objects (or deltas) expected.
        received_bytes (int): Bytes transferred so far, when git reports it.
    """

    phase: str
    percent: int
    done: int
    total: int
    received_bytes: int = 0


ProgressCallback = Callable[[TransferProgress], None]
CredentialCallback = Callable[[str, str | None, CredentialType], Credential]

_PROGRESS_RE = re.compile(
    r"^(?:remote:\s*)?(?P<label>Receiving objects|Resolving deltas|Indexing objects):"
    r"\s+(?P<pct>\d+)%\s+\((?P<done>\d+)/(?P<total>\d+)\)"
    r"(?:,\s+(?P<size>[\d.]+)\s+(?P<unit>bytes|KiB|MiB|GiB))?"
)
_UNITS = {"bytes": 1, "KiB": 1024, "MiB": 1024**2, "GiB": 1024**3}
_SCP_LIKE_RE = re.compile(r"^(?:(?P<user>[^@/:]+)@)?(?P<host>[^@/:]+):(?!//)")


def parse_progress(line: str) -> TransferProgress | None:
    """Parses one line of git's --progress output into an event.

    Args:
        line (str): A single stderr line from clone/fetch.

    Returns:
        TransferProgress | None: The event, or None for non-progress lines.
    """
    match = _PROGRESS_RE.match(line.strip())
    if not match:
        return None
    phase = "receiving" if match.group("label") == "Receiving objects" else "indexing"
    received = 0
    if match.group("size"):
        received = int(float(match.group("size")) * _UNITS[match.group("unit")])
    return TransferProgress(
        phase=phase,
        percent=int(match.group("pct")),
        done=int(match.group("done")),
        total=int(match.group("total")),
        received_bytes=received,
    )


def challenge_for(url: str) -> tuple[CredentialType | None, str | None]:
    """Determines which credential challenge a remote URL implies.

    Args:
        url (str): The remote URL or path.

    Returns:
        tuple[CredentialType | None, str | None]: The challenge type (None for
        local transports that never authenticate) and the username embedded
        in the URL, if any.
    """
    if "://" in url:
        parsed = urlsplit(url)
        scheme = parsed.scheme.lower()
        if scheme in ("http", "https"):
            return CredentialType.USER_PASS_PLAINTEXT, parsed.username
        if scheme in ("ssh", "git+ssh", "ssh+git"):
            return CredentialType.SSH_KEY, parsed.username
        return None, None

    match = _SCP_LIKE_RE.match(url)
    if match and not Path(url).exists():
        return CredentialType.SSH_KEY, match.group("user")
    return None, None


def credential_overrides(credential: Credential) -> tuple[list[str], dict[str, str]]:
    """Translates a credential into git config flags and environment variables.

    Args:
        credential (Credential): The credential chosen for this attempt.

    Returns:
        tuple[list[str], dict[str, str]]: `-c` flags to place before the git
        subcommand, and environment variables to add to the subprocess.
    """
    if credential.kind is CredentialKind.SSH_KEY:
        key = shlex.quote(str(credential.key_path))
        return [], {
            "GIT_SSH_COMMAND": f"ssh -i {key} -o IdentitiesOnly=yes -o BatchMode=yes"
        }
    if credential.kind is CredentialKind.SSH_AGENT:
        return [], {"GIT_SSH_COMMAND": "ssh -o BatchMode=yes"}
    if credential.kind is CredentialKind.USER_PASS:
        helper = (
            "!f() { echo username=$REPOMAN_GIT_USERNAME; "
            "echo password=$REPOMAN_GIT_PASSWORD; }; f"
        )
        return ["-c", "credential.helper=", "-c", f"credential.helper={helper}"], {
            "REPOMAN_GIT_USERNAME": credential.username or "git",
            "REPOMAN_GIT_PASSWORD": credential.password or "",
        }
    # DEFAULT and HELPER rely on git's own configuration.
    return [], {}


def _network_env(extra: dict[str, str] | None = None) -> dict[str, str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    if extra:
        env.update(extra)
    return env


def _git(
    args: list[str],
    cwd: Path | None = None,
    env: dict | None = None,
    capture: bool = True,
) -> str:
    """Executes a git command and returns its stripped stdout.

    Raises:
        GitCommandError: If git exits with a non-zero status.
    """
    try:
        res = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            env=env,
        )
        return res.stdout.strip() if capture else ""
    except subprocess.CalledProcessError as e:
        raise GitCommandError(args, e.stderr or "") from e
    except OSError as e:
        raise BackendError(f"Could not run git: {e}") from e


def _git_streaming(
    args: list[str],
    cwd: Path | None = None,
    env: dict | None = None,
    progress: ProgressCallback | None = None,
) -> None:
    """Executes a long-running git transfer, forwarding progress events.

    Lines that are not progress updates are treated as sideband messages and
    logged at DEBUG; they also form the error text if the command fails.
    """
    try:
        proc = subprocess.Popen(
            ["git", *args],
            cwd=cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as e:
        raise BackendError(f"Could not run git: {e}") from e

    messages: list[str] = []
    assert proc.stderr is not None
    with proc.stderr:
        for raw in proc.stderr:
            line = raw.strip()
            if not line:
                continue
            event = parse_progress(line)
            if event is None:
                messages.append(line)
                logger.debug(f"git {args[0]}: {line}")
            elif progress is not None:
                progress(event)

    if proc.wait() != 0:
        raise GitCommandError(args, "\n".join(messages))


def run_network(
    args: list[str],
    url: str,
    cwd: Path | None = None,
    credentials: CredentialCallback | None = None,
    progress: ProgressCallback | None = None,
) -> None:
    """Runs a git transfer against `url`, negotiating credentials as challenged.

    SSH remotes are challenged before the first attempt. HTTP remotes are
    tried without credentials first and challenged only after a rejection.
    Local transports never consult the callback. A rejection after the
    callback has answered asks it again, which it is expected to refuse.

    Raises:
        CredentialError: If the callback refuses to supply a credential.
        GitCommandError: If git fails for any other reason.
    """
    challenge, username = challenge_for(url)
    credential: Credential | None = None
    if challenge is CredentialType.SSH_KEY and credentials is not None:
        credential = credentials(url, username, challenge)

    while True:
        config_args, extra_env = (
            credential_overrides(credential) if credential else ([], {})
        )
        try:
            _git_streaming(
                [*config_args, *args],
                cwd=cwd,
                env=_network_env(extra_env),
                progress=progress,
            )
            return
        except GitCommandError as e:
            if (
                challenge is None
                or credentials is None
                or not is_auth_failure(e.stderr)
            ):
                raise
            logger.debug(f"Remote rejected credentials for {url}: {e.stderr}")
            credential = credentials(url, username, challenge)


class GitRepo:
    """A wrapper around the Git command-line interface for a specific repository.

    Works for both bare mirrors (pristines) and ordinary working copies
    (clones). Network operations accept a credential callback and a progress
    callback; everything else shells out through `_run`.

    Attributes:
        path (Path): The repository root (the bare directory or the worktree).
        bare (bool): Whether the repository is a bare mirror.
    """

    def __init__(self, path: Path, bare: bool = False):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.
            bare (bool, optional): Whether `path` is a bare repository.

        Raises:
            BackendError: If the path does not contain a repository.
        """
        self.path = path
        self.bare = bare
        if bare:
            valid = (path / "HEAD").exists() and (path / "objects").is_dir()
        else:
            valid = (path / ".git").exists()
        if not valid:
            raise BackendError(f"Not a git repository: {self.path}")

    @classmethod
    def clone_bare(
        cls,
        url: str,
        dest: Path,
        credentials: CredentialCallback | None = None,
        progress: ProgressCallback | None = None,
    ) -> "GitRepo":
        """Creates a bare mirror of `url` at `dest`.

        Args:
            url (str): The remote to clone.
            dest (Path): Target directory; must not exist.
            credentials (CredentialCallback | None): Credential strategy.
            progress (ProgressCallback | None): Transfer progress sink.

        Returns:
            GitRepo: A handle on the new bare repository.
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        run_network(
            ["clone", "--bare", "--progress", url, str(dest)],
            url,
            cwd=dest.parent,
            credentials=credentials,
            progress=progress,
        )
        return cls(dest, bare=True)

    @classmethod
    def init(cls, path: Path) -> "GitRepo":
        """Creates an empty working-copy repository at `path`."""
        path.mkdir(parents=True, exist_ok=True)
        _git(["init", "--quiet", str(path)])
        return cls(path)

    @staticmethod
    def list_remote_refs(
        url: str, credentials: CredentialCallback | None = None
    ) -> list[str]:
        """Lists the ref names advertised by a remote without fetching.

        Args:
            url (str): The remote to query.
            credentials (CredentialCallback | None): Credential strategy.

        Returns:
            list[str]: Full ref names, including peeled `^{}` entries.
        """
        challenge, username = challenge_for(url)
        credential: Credential | None = None
        if challenge is CredentialType.SSH_KEY and credentials is not None:
            credential = credentials(url, username, challenge)

        while True:
            config_args, extra_env = (
                credential_overrides(credential) if credential else ([], {})
            )
            try:
                output = _git(
                    [*config_args, "ls-remote", url], env=_network_env(extra_env)
                )
                break
            except GitCommandError as e:
                if (
                    challenge is None
                    or credentials is None
                    or not is_auth_failure(e.stderr)
                ):
                    raise
                credential = credentials(url, username, challenge)

        refs = []
        for line in output.splitlines():
            parts = line.split("\t", 1)
            if len(parts) == 2:
                refs.append(parts[1].strip())
        return refs

    def _run(
        self, args: list[str], capture: bool = True, env: dict | None = None
    ) -> str:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            capture (bool, optional): Whether to return stdout. Defaults to True.
            env (dict | None, optional): Environment for the subprocess.

        Returns:
            str: The stripped stdout if capture is True, otherwise "".

        Raises:
            GitCommandError: If the git command returns a non-zero exit code.
        """
        return _git(args, cwd=self.path, env=env, capture=capture)

    # --- Layout ---

    @property
    def git_dir(self) -> Path:
        return self.path if self.bare else self.path / ".git"

    @property
    def objects_dir(self) -> Path:
        return self.git_dir / "objects"

    @property
    def alternates_file(self) -> Path:
        return self.objects_dir / "info" / "alternates"

    def read_alternates(self) -> list[Path]:
        """Returns the object directories this repository borrows from."""
        if not self.alternates_file.exists():
            return []
        lines = self.alternates_file.read_text().splitlines()
        return [Path(line.strip()) for line in lines if line.strip()]

    def write_alternates(self, object_dirs: list[Path]) -> None:
        """Points this repository's object lookups at other object stores."""
        self.alternates_file.parent.mkdir(parents=True, exist_ok=True)
        self.alternates_file.write_text(
            "".join(f"{d.resolve()}\n" for d in object_dirs)
        )

    # --- Remotes ---

    def remote_url(self, name: str = "origin") -> str | None:
        try:
            return self._run(["remote", "get-url", name]) or None
        except GitCommandError:
            return None

    def add_remote(self, name: str, url: str) -> None:
        self._run(["remote", "add", name, url], capture=False)

    def set_remote_url(self, name: str, url: str) -> None:
        self._run(["remote", "set-url", name, url], capture=False)

    def remotes(self) -> list[str]:
        output = self._run(["remote"])
        return output.splitlines() if output else []

    def config_get(self, key: str) -> str | None:
        try:
            return self._run(["config", "--get", key]) or None
        except GitCommandError:
            return None

    def fetch(
        self,
        remote: str,
        refspecs: list[str],
        credentials: CredentialCallback | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        """Fetches `refspecs` from a configured remote.

        Args:
            remote (str): Remote name, e.g. 'origin'.
            refspecs (list[str]): Refspecs to fetch.
            credentials (CredentialCallback | None): Credential strategy.
            progress (ProgressCallback | None): Transfer progress sink.

        Raises:
            BackendError: If the remote is not configured.
        """
        url = self.remote_url(remote)
        if url is None:
            raise BackendError(f"Remote '{remote}' not found in {self.path}")
        run_network(
            ["fetch", "--progress", remote, *refspecs],
            url,
            cwd=self.path,
            credentials=credentials,
            progress=progress,
        )

    # --- Refs ---

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision (tag, branch, relative ref) to a full SHA-1 hash.

        Args:
            rev (str): The revision to parse (e.g., 'HEAD', 'main').

        Returns:
            str | None: The full SHA-1, or None if it could not be resolved.
        """
        try:
            return self._run(["rev-parse", "--verify", "--quiet", f"{rev}^{{commit}}"])
        except GitCommandError as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    def ref_exists(self, ref: str) -> bool:
        try:
            self._run(["show-ref", "--verify", "--quiet", ref])
            return True
        except GitCommandError:
            return False

    def update_ref(self, ref: str, new_oid: str, old_oid: str | None = None) -> None:
        """Moves a reference to a new object ID.

        Args:
            ref (str): The reference to update (e.g., 'refs/heads/main').
            new_oid (str): The new SHA-1 hash.
            old_oid (str | None, optional): If given, the update fails unless the
                ref currently points here.
        """
        cmd = ["update-ref", "-m", "repoman: fast-forward", ref, new_oid]
        if old_oid:
            cmd.append(old_oid)
        self._run(cmd)

    def list_refs(self, pattern: str) -> list[str]:
        """Lists references matching a specific pattern.

        Args:
            pattern (str): The prefix or glob to match (e.g., 'refs/heads').

        Returns:
            list[str]: A list of matching reference names.
        """
        try:
            output = self._run(["for-each-ref", "--format=%(refname)", pattern])
            return output.splitlines() if output else []
        except GitCommandError as e:
            logger.warning(f"Git error listing refs for {pattern}: {e}")
            return []

    def list_branches(self) -> list[str]:
        return [
            ref.removeprefix("refs/heads/") for ref in self.list_refs("refs/heads")
        ]

    def head_branch(self) -> str | None:
        """Returns the branch HEAD points at, even if that branch is unborn."""
        try:
            return self._run(["symbolic-ref", "--short", "HEAD"]) or None
        except GitCommandError:
            return None

    def current_branch(self) -> str | None:
        """Returns the checked-out branch name, or None when HEAD is detached."""
        return self._run(["branch", "--show-current"]) or None

    # --- Working tree ---

    def checkout(self, branch: str, force: bool = False) -> None:
        """Checks out a branch or commit.

        Args:
            branch (str): The target branch name or commit hash.
            force (bool, optional): Discard local changes. Defaults to False.
        """
        cmd = ["checkout", "--quiet"]
        if force:
            cmd.append("-f")
        cmd.append(branch)
        self._run(cmd, capture=False)

    def checkout_new_branch(self, branch: str, start: str, track: bool = True) -> None:
        """Creates `branch` at `start` and checks it out, discarding local changes."""
        cmd = ["checkout", "--quiet", "-f", "-B", branch]
        if track:
            cmd.append("--track")
        cmd.append(start)
        self._run(cmd, capture=False)

    def checkout_detached(self, commit: str, force: bool = False) -> None:
        cmd = ["checkout", "--quiet"]
        if force:
            cmd.append("-f")
        cmd.extend(["--detach", commit])
        self._run(cmd, capture=False)

    def status_porcelain(self, path: str | None = None) -> list[str]:
        """Returns the porcelain (machine-readable) status of the repository.

        Args:
            path (str | None, optional): Restrict status to a path.

        Returns:
            list[str]: Lines returned by `git status --porcelain`.
        """
        cmd = ["status", "--porcelain"]
        if path:
            cmd.append(path)
        output = self._run(cmd)
        return output.splitlines() if output else []

    # --- History ---

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        try:
            self._run(["merge-base", "--is-ancestor", ancestor, descendant])
            return True
        except GitCommandError:
            return False

    def merge_analysis(self, target: str) -> MergeAnalysis:
        """Classifies how HEAD relates to `target` without touching anything.

        Args:
            target (str): The incoming commit SHA.

        Returns:
            MergeAnalysis: UNBORN if HEAD has no commit yet, UP_TO_DATE if
            `target` is already contained in HEAD, FAST_FORWARD if HEAD is an
            ancestor of `target`, otherwise DIVERGED.
        """
        local = self.rev_parse("HEAD")
        if local is None:
            return MergeAnalysis.UNBORN
        if local == target or self.is_ancestor(target, local):
            return MergeAnalysis.UP_TO_DATE
        if self.is_ancestor(local, target):
            return MergeAnalysis.FAST_FORWARD
        return MergeAnalysis.DIVERGED

    def ahead_behind(self, local: str, upstream: str) -> tuple[int, int]:
        """Counts commits unique to each side of `local...upstream`.

        Returns:
            tuple[int, int]: (ahead, behind) relative to `upstream`.
        """
        output = self._run(
            ["rev-list", "--left-right", "--count", f"{local}...{upstream}"]
        )
        ahead, behind = output.split()
        return int(ahead), int(behind)

    def head_commit_time(self) -> int:
        """Returns the committer timestamp of HEAD as a Unix epoch."""
        return int(self._run(["log", "-1", "--format=%ct", "HEAD"]))

    def gc_auto(self) -> None:
        self._run(["gc", "--auto", "--quiet"], capture=False)
