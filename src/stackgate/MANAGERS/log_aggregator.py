"""
Log aggregation and tailing for services.
"""
import os
import time
from collections import deque
from typing import Callable, Dict, Iterator, List, Optional, TextIO


class LogAggregator:
    """
    Aggregates and tails logs from multiple service log files.
    """
    def __init__(self, log_dir: str):
        """
        Initializes the log aggregator.

        :param log_dir: The directory where log files are stored.
        """
        self.log_dir = log_dir

    def path(self, name: str) -> str:
        return os.path.join(self.log_dir, f"{name}.log")

    @staticmethod
    def format_line(name: str, line: str) -> str:
        return f"{name:15} | {line.rstrip()}"

    def read(self, service_names: List[str], tail: Optional[int] = None) -> Iterator[str]:
        """
        Yields the existing lines of each service's log, service by service.

        :param tail: Only the last ``tail`` lines of each log.
        """
        for name in service_names:
            path = self.path(name)
            if not os.path.exists(path):
                continue
            with open(path, 'r') as f:
                lines = deque(f, maxlen=tail) if tail is not None else f.readlines()
            for line in lines:
                yield self.format_line(name, line)

    def follow(self,
               service_names: List[str],
               should_stop: Callable[[], bool] = lambda: False,
               poll_interval: float = 0.1) -> Iterator[str]:
        """
        Yields new lines as services write them, starting from the current end
        of each log. Logs that do not exist yet are picked up once created.
        """
        files: Dict[str, TextIO] = {}
        try:
            while not should_stop():
                idle = True
                for name in service_names:
                    if name not in files:
                        path = self.path(name)
                        if os.path.exists(path):
                            f = open(path, 'r')
                            f.seek(0, os.SEEK_END)
                            files[name] = f

                    if name in files:
                        line = files[name].readline()
                        if line:
                            idle = False
                            yield self.format_line(name, line)
                if idle:
                    time.sleep(poll_interval)
        finally:
            for f in files.values():
                f.close()
