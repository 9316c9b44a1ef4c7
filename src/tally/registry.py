from tally.errors import UnsupportedFormat
from tally.models import ReaderInfo


class ReaderRegistry:
    def __init__(self):
        self._readers: dict[str, ReaderInfo] = {}
        self._by_extension: dict[str, ReaderInfo] = {}

    def register(self, info: ReaderInfo) -> None:
        self._readers[info.key] = info
        for ext in info.file_extensions:
            self._by_extension[ext.lower().lstrip(".")] = info

    def get_by_key(self, key: str) -> ReaderInfo | None:
        return self._readers.get(key)

    def get_for_extension(self, extension: str) -> ReaderInfo:
        info = self._by_extension.get(extension.lower().lstrip("."))
        if info is None:
            raise UnsupportedFormat(
                f"Unsupported file type '{extension}'. Accepted types: {', '.join(self.extensions())}"
            )
        return info

    def get_for_file(self, file_name: str) -> ReaderInfo:
        _, dot, ext = file_name.rpartition(".")
        return self.get_for_extension(ext if dot else "")

    def extensions(self) -> list[str]:
        return sorted(self._by_extension)

    def list_all(self) -> list[ReaderInfo]:
        return list(self._readers.values())


registry = ReaderRegistry()
