"""
Timeout, retry and protocol constants for lxc-manager.

Centralizes the values shared by the runner, the executor and the CLI so
they stay consistent and are easy to tune.
"""

from __future__ import annotations

# =============================================================================
# Command Execution Timeouts
# =============================================================================

# Default timeout for a single remote command attempt (2 minutes)
COMMAND_DEFAULT_TIMEOUT_S = 120.0

# Timeout for the host discovery probe
PROBE_TIMEOUT_S = 30.0

# =============================================================================
# Retry Configuration
# =============================================================================

# Total attempts (first try included) for connection-level failures
CONNECTION_RETRY_ATTEMPTS = 3

# Fixed delay between connection retries
CONNECTION_RETRY_DELAY_S = 3.0

# =============================================================================
# Exit Codes
# =============================================================================

# ssh exits with 255 when the connection itself failed
CONNECTION_FAILURE_EXIT_CODE = 255

# Exit code reported for an attempt killed by the timeout
TIMEOUT_EXIT_CODE = 124

# Exit code carried by events for failures detected by the engine itself
ENGINE_FAILURE_EXIT_CODE = 1

# Exit code of an event whose step is still running
RUNNING_EXIT_CODE = -1

# =============================================================================
# Protocol Markers
# =============================================================================

# Substituted for {{name}} tokens that no scope defines
NOT_DEFINED = "NOT_DEFINED"

# Prefix of values that reference a file on the machine running the engine
LOCAL_FILE_PREFIX = "local:"

# Prefix of the marker line echoed ahead of every payload
MARKER_PREFIX = "LXCMANAGER_MARKER_"

# Suffix the step loader appends to names of steps it decided to skip
SKIPPED_SUFFIX = "(skipped)"

# Canonical result of a step that printed nothing
EMPTY_RESULT = "OK"
