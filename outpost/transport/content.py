from __future__ import annotations

import hashlib
import io
import posixpath
import tarfile
import time
from pathlib import Path
from typing import Union


class Content:
    """An in-memory blob to be copied to a remote target."""

    __slots__ = ("_data",)

    def __init__(self, data: Union[str, bytes]) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._data = bytes(data)

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "Content":
        return cls(Path(path).expanduser().read_bytes())

    @property
    def size(self) -> int:
        return len(self._data)

    def read(self) -> bytes:
        return self._data

    def text(self) -> str:
        return self._data.decode("utf-8")

    def open(self) -> io.BytesIO:
        return io.BytesIO(self._data)

    def sha256(self) -> str:
        return hashlib.sha256(self._data).hexdigest()

    def tar_archive(self, destination: str, mode: int = 0o644) -> bytes:
        """Return a tar stream holding this blob named after ``destination``.

        Extracting the stream with ``tar -xmf - -C <dirname(destination)>``
        recreates the file at ``destination``.
        """

        buffer = io.BytesIO()
        info = tarfile.TarInfo(name=posixpath.basename(destination))
        info.size = self.size
        info.mode = mode
        info.mtime = int(time.time())
        with tarfile.open(fileobj=buffer, mode="w") as archive:
            archive.addfile(info, io.BytesIO(self._data))
        return buffer.getvalue()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Content):
            return NotImplemented
        return self._data == other._data

    def __hash__(self) -> int:
        return hash(self._data)

    def __repr__(self) -> str:
        return f"Content(size={self.size})"
