import os
from pathlib import Path
from typing import Generator, Iterable, List


class FileScanner:
    """Scans watched folders for media files."""

    def __init__(self, extensions: List[str], include_subfolders: bool = True, skip_dirs: Iterable[str] = ()):
        self.extensions = [(ext if ext.startswith(".") else f".{ext}").lower() for ext in extensions]
        self.include_subfolders = include_subfolders
        self.skip_dirs = set(skip_dirs)

    def is_media(self, path: Path) -> bool:
        return path.suffix.lower() in self.extensions

    def scan(self, root_dir: Path) -> Generator[Path, None, None]:
        """Yields media files under root_dir in a deterministic order."""
        for root, dirs, files in os.walk(str(root_dir)):
            root_path = Path(root)

            if self.include_subfolders:
                # Generated artifacts (transcripts, thumbnails) are never media input
                dirs[:] = sorted(d for d in dirs if d not in self.skip_dirs)
            else:
                dirs[:] = []
            files.sort()

            for file_name in files:
                file_path = root_path / file_name
                if not self.is_media(file_path):
                    continue
                try:
                    if not file_path.is_file():
                        continue
                except OSError:
                    continue
                yield file_path
