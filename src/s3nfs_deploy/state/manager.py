"""State manager for loading, saving, and locking deployment state."""

import fcntl
import json
import os
import time
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from s3nfs_deploy.state.models import State
from s3nfs_deploy.utils.errors import StateError, StateLockError, StateNotFoundError
from s3nfs_deploy.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_STATE_DIR = ".s3nfs/state"


def state_path_for(project_name: str, environment: str, state_dir: str = DEFAULT_STATE_DIR) -> Path:
    """Location of the state file for a project environment."""
    return Path(state_dir) / project_name / f"{environment}.json"


class StateManager:
    """Manages deployment state with atomic writes and file locking."""

    def __init__(self, state_path: str):
        """
        Initialize StateManager.

        Args:
            state_path: Path to the state file
        """
        self.state_path = Path(state_path)
        self._lock_file: Optional[int] = None
        self._current_state: Optional[State] = None

    def load(self) -> State:
        """
        Load state from file.

        Returns:
            State object

        Raises:
            StateNotFoundError: If state file does not exist
            StateError: If state file is corrupted or invalid
        """
        if not self.state_path.exists():
            raise StateNotFoundError(f"State file not found: {self.state_path}")

        try:
            with open(self.state_path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file: {e}", cause=e) from e
        except OSError as e:
            raise StateError(f"Failed to read state file: {e}", cause=e) from e

        try:
            self._current_state = State.from_dict(data)
        except ValidationError as e:
            raise StateError(f"State file is invalid: {e}", cause=e) from e

        return self._current_state

    def save(self, state: State) -> None:
        """
        Save state to file, bumping its serial.

        The state is written to a temporary file and renamed into place so a
        crash never leaves a truncated state file behind.

        Args:
            state: State object to save

        Raises:
            StateError: If state cannot be saved
        """
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        state.serial += 1

        temp_path = self.state_path.with_suffix(".tmp")
        try:
            with open(temp_path, "w") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            temp_path.replace(self.state_path)
        except OSError as e:
            raise StateError(f"Failed to save state file: {e}", cause=e) from e

        self._current_state = state
        logger.debug(f"Saved state serial {state.serial} to {self.state_path}")

    def initialize(
        self,
        project_name: str,
        environment: str,
        region: str,
        account: Optional[str] = None
    ) -> State:
        """Create an empty state (not yet written to disk)."""
        self._current_state = State(
            project_name=project_name,
            environment=environment,
            region=region,
            account=account,
        )
        return self._current_state

    def load_or_initialize(
        self,
        project_name: str,
        environment: str,
        region: str,
        account: Optional[str] = None
    ) -> State:
        """Load the recorded state, or start from an empty one."""
        if self.exists():
            return self.load()
        return self.initialize(project_name, environment, region, account)

    def exists(self) -> bool:
        """Check if state file exists."""
        return self.state_path.exists()

    def lock(self, timeout: float = 30) -> None:
        """
        Acquire exclusive lock on state file.

        Args:
            timeout: Lock timeout in seconds

        Raises:
            StateLockError: If lock cannot be acquired
        """
        lock_path = self.state_path.with_suffix(".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock_file = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
        start_time = time.monotonic()
        while True:
            try:
                fcntl.flock(self._lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() - start_time > timeout:
                    os.close(self._lock_file)
                    self._lock_file = None
                    raise StateLockError(
                        f"Failed to acquire lock on state file after {timeout}s",
                        suggestions=['Wait for the other s3nfs process to finish']
                    )
                time.sleep(0.1)

    def unlock(self) -> None:
        """Release lock on state file."""
        if self._lock_file is not None:
            try:
                fcntl.flock(self._lock_file, fcntl.LOCK_UN)
                os.close(self._lock_file)
            finally:
                self._lock_file = None

    def __enter__(self):
        """Context manager entry - acquire lock and load state."""
        self.lock()
        if self.exists():
            self.load()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - release lock."""
        self.unlock()

    def get_state(self) -> State:
        """
        Get the current state.

        Raises:
            StateError: If state is not loaded
        """
        if self._current_state is None:
            raise StateError("State not loaded. Call load() first.")

        return self._current_state
