"""
Persisted project state, so ``ps`` and ``down`` can find a running supervisor.
"""
import os
from typing import Optional

from pydantic import ValidationError

from ..MODELS.runtime_state import ProjectState


class StateStore:
    """
    Reads and writes ``state.json`` in the project state directory.
    """
    def __init__(self, state_dir: str):
        self.state_dir = state_dir
        self.path = os.path.join(state_dir, "state.json")

    def write(self, state: ProjectState) -> None:
        os.makedirs(self.state_dir, exist_ok=True)
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "w") as f:
            f.write(state.model_dump_json(indent=2))
        os.replace(tmp_path, self.path)

    def read(self) -> Optional[ProjectState]:
        """
        :return: The last written state, or None if there is none (or it is unreadable).
        """
        if not os.path.exists(self.path):
            return None
        with open(self.path, "r") as f:
            content = f.read()
        try:
            return ProjectState.model_validate_json(content)
        except ValidationError:
            return None

    def clear(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)

    def request_teardown(self, remove_volumes: bool = False) -> None:
        """
        Leaves a note for the supervisor, read when it is asked to stop.
        """
        os.makedirs(self.state_dir, exist_ok=True)
        with open(self._request_path, "w") as f:
            f.write("remove-volumes" if remove_volumes else "keep-volumes")

    def pop_teardown_request(self) -> bool:
        """
        :return: Whether the pending teardown request asked for volume removal.
        """
        if not os.path.exists(self._request_path):
            return False
        with open(self._request_path, "r") as f:
            remove_volumes = f.read().strip() == "remove-volumes"
        os.remove(self._request_path)
        return remove_volumes

    @property
    def _request_path(self) -> str:
        return os.path.join(self.state_dir, "teardown-request")
