"""
Marker store for completed bootstrap phases.

A marker is a zero-byte file named <phase>.done inside the marker
directory. Markers are only ever created; deleting one (``moltdown markers
reset``) is how an operator forces a phase to run again.
"""

from pathlib import Path

MARKER_SUFFIX = ".done"


def _validate_phase_name(phase_name: str) -> None:
    if not phase_name or not phase_name.strip():
        raise ValueError("Phase name must not be empty")
    if "/" in phase_name or "\\" in phase_name or phase_name in (".", ".."):
        raise ValueError(f"Invalid phase name: {phase_name!r}")


class MarkerStore:
    """Persistent set of completed phase names backed by a directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def __repr__(self) -> str:
        return f"MarkerStore({str(self.directory)!r})"

    def path_for(self, phase_name: str) -> Path:
        """Return the marker file path for a phase."""
        _validate_phase_name(phase_name)
        return self.directory / f"{phase_name}{MARKER_SUFFIX}"

    def is_done(self, phase_name: str) -> bool:
        """Check whether a phase has a marker."""
        return self.path_for(phase_name).exists()

    def mark_done(self, phase_name: str) -> Path:
        """
        Record that a phase completed.

        An existing marker is left untouched.

        Args:
            phase_name: Stable phase identifier

        Returns:
            Path of the marker file
        """
        path = self.path_for(phase_name)
        self.directory.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)
        return path

    def clear(self, phase_name: str) -> bool:
        """
        Remove the marker for a phase.

        Returns:
            True if a marker was removed, False if none existed
        """
        path = self.path_for(phase_name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def completed(self) -> list[str]:
        """Return the sorted names of all completed phases."""
        if not self.directory.is_dir():
            return []
        return sorted(
            p.name[: -len(MARKER_SUFFIX)]
            for p in self.directory.iterdir()
            if p.is_file() and p.name.endswith(MARKER_SUFFIX)
        )

    def reset_all(self) -> int:
        """
        Remove every marker.

        Returns:
            Number of markers removed
        """
        removed = 0
        for name in self.completed():
            if self.clear(name):
                removed += 1
        return removed
