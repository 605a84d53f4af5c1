"""Drain flag: while set, no new workers are dispatched."""

from pathlib import Path


class DrainSignal:
    def __init__(self, path: Path):
        self.path = path

    def is_set(self) -> bool:
        return self.path.exists()

    def set(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("")

    def clear(self):
        self.path.unlink(missing_ok=True)
