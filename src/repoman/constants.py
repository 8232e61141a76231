import os
from pathlib import Path

"""Global constants and path definitions for repoman.

This module defines the default filesystem layout (one root each for the vault,
pristine mirrors, clones and logs), application identifiers, and the fixed
texts shown to users when something goes wrong.
"""

# --- Identity ---
APP_NAME = "repoman"
"""str: The human-readable application name, also used as the logger name."""

# --- Paths ---
BASE_DIR = Path.home() / ".repoman"
"""Path: The default root under which all managed state lives."""

DEFAULT_VAULT_DIR = BASE_DIR / "vault"
"""Path: Holds vault.json and one metadata directory per repository."""

DEFAULT_PRISTINES_DIR = BASE_DIR / "pristines"
"""Path: Holds one bare mirror per registered repository."""

DEFAULT_CLONES_DIR = BASE_DIR / "clones"
"""Path: Holds the disposable working copies."""

DEFAULT_LOGS_DIR = BASE_DIR / "logs"
"""Path: Holds the application log, the agent log and the agent PID file."""

# --- Configuration Paths ---
_XDG_CONFIG = os.environ.get("XDG_CONFIG_HOME")
CONFIG_DIR: Path = (Path(_XDG_CONFIG) if _XDG_CONFIG else Path.home() / ".config") / (
    APP_NAME
)
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

# --- File names ---
VAULT_FILE_NAME = "vault.json"
METADATA_FILE_NAME = "metadata.json"
LOG_FILE_NAME = "repoman.log"
AGENT_LOG_NAME = "agent.log"
AGENT_PID_NAME = "agent.pid"

# --- Logic Constants ---
DEFAULT_SYNC_INTERVAL = 3600
"""int: Seconds between automatic syncs when a repository sets no interval."""

CLONE_SUFFIX_LENGTH = 6
"""int: Length of the random suffix appended to generated clone names."""

CLONE_SUFFIX_CHARS = "abcdefghijklmnopqrstuvwxyz0123456789"
"""str: Alphabet used for generated clone suffixes."""

PROGRESS_STEP_PERCENT = 5
"""int: Minimum change in transfer percentage before progress is reported again."""

AUTH_HINTS = (
    "authentication failed",
    "permission denied (publickey",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "invalid username or password",
    "the requested url returned error: 401",
    "the requested url returned error: 403",
)
"""tuple[str]: Lowercase fragments of backend errors that indicate rejected credentials."""

AUTH_HELP = """SSH authentication failed. Your SSH key may not be loaded in the agent.

To fix this, try one of the following:

  1. Add your key to the SSH agent:
       ssh-add ~/.ssh/id_ed25519

  2. Use keychain to keep the agent alive across sessions:
       eval $(keychain --eval --quiet id_ed25519)

  3. Unlock your desktop keyring (gnome-keyring or kwallet) so the agent
     can read the key.

  4. For HTTPS remotes, configure a credential helper:
       git config --global credential.helper cache
"""
"""str: Remediation text attached to authentication failures."""
