# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Execution of system processes with log redirection and process-tree shutdown.
"""
import logging
import os
import subprocess
from typing import List, Dict, Optional

import psutil

logger = logging.getLogger(__name__)


class ProcessRunner:
    """
    Manages the execution of a single system process.
    """
    def __init__(self, name: str, log_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process.
            log_file (Optional[str]): Path to a file where stdout/stderr will be redirected.
        """
        self.name = name
        self.log_file = log_file
        self.process: Optional[subprocess.Popen] = None
        self.log_handle = None

    def start(self,
              command: List[str],
              env: Dict[str, str],
              working_dir: Optional[str] = None):
        """
        Starts the process.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.

        Raises:
            OSError: If the executable cannot be started.
        """
        if working_dir and not os.path.exists(working_dir):
            os.makedirs(working_dir, exist_ok=True)

        stdout = subprocess.DEVNULL
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self.log_handle = open(self.log_file, 'a')
            stdout = self.log_handle

        logger.info("[%s] Starting command: %s", self.name, ' '.join(command))

        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False
            )
        except OSError as e:
            logger.error("[%s] Failed to start: %s", self.name, e)
            self._close_log()
            raise

    def wait(self) -> int:
        """
        Blocks until the process exits.

        Returns:
            int: The exit code. A process killed by a signal reports -signum.
        """
        if self.process is None:
            raise RuntimeError(f"[{self.name}] process was never started")
        code = self.process.wait()
        self._close_log()
        return code

    def stop(self, timeout: float = 10):
        """
        Sends SIGTERM to the process and all of its children, then SIGKILL to
        whatever is still alive after ``timeout`` seconds.

        Args:
            timeout (float): Seconds to wait for termination before killing.
        """
        if not self.is_running():
            return
        logger.info("[%s] Stopping process...", self.name)
        try:
            parent = psutil.Process(self.process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=timeout)
        if alive:
            logger.warning("[%s] Process did not terminate, killing...", self.name)
            for proc in alive:
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    pass

    def is_running(self) -> bool:
        """
        Checks if the process is currently running.

        Returns:
            bool: True if running, False otherwise.
        """
        return self.process is not None and self.process.poll() is None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def _close_log(self):
        if self.log_handle is not None:
            self.log_handle.close()
            self.log_handle = None
