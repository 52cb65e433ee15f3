"""File management confined to an instance directory."""

import base64
import binascii
import shutil
import stat as stat_module
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Union

import aiofiles
import aiofiles.os
import structlog

from zyper_daemon.core.exceptions import AccessDeniedError, FileOperationError, PathNotFoundError

logger = structlog.get_logger()

MAX_READ_BYTES = 5 * 1024 * 1024

BINARY_EXTENSIONS = (
    ".jar",
    ".zip",
    ".gz",
    ".tar",
    ".exe",
    ".dll",
    ".so",
    ".dylib",
    ".class",
)

_rmtree = aiofiles.os.wrap(shutil.rmtree)


def _mtime(st) -> str:
    return datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat()


class InstanceFiles:
    """File operations rooted at one instance's working directory.

    Every client-supplied path is resolved against the root, symlinks
    included, and anything that lands outside it raises
    :class:`AccessDeniedError`.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).resolve()

    def resolve(self, relative: str) -> Path:
        relative = (relative or "").lstrip("/\\")
        candidate = (self.root / relative).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            logger.warning("Path escapes instance directory", root=str(self.root), path=relative)
            raise AccessDeniedError(f"Access denied: {relative}", code="path_traversal")
        return candidate

    def relative(self, path: Path) -> str:
        rel = path.relative_to(self.root).as_posix()
        return "" if rel == "." else rel

    async def _stat(self, path: Path):
        try:
            return await aiofiles.os.stat(path)
        except FileNotFoundError:
            raise PathNotFoundError(f"Path not found: {self.relative(path) or '/'}", code="path_not_found")

    async def list(self, relative: str = "/") -> Dict[str, Any]:
        if not await aiofiles.os.path.isdir(self.root):
            await aiofiles.os.makedirs(self.root, exist_ok=True)
            return {"path": relative, "items": [], "message": "Server directory created"}

        path = self.resolve(relative)
        st = await self._stat(path)

        if not stat_module.S_ISDIR(st.st_mode):
            info = await self.read(relative)
            info["isFile"] = True
            return info

        items: List[Dict[str, Any]] = []
        for name in await aiofiles.os.listdir(path):
            item_path = path / name
            try:
                item_st = await aiofiles.os.stat(item_path)
            except FileNotFoundError:
                continue
            items.append({
                "name": name,
                "type": "directory" if stat_module.S_ISDIR(item_st.st_mode) else "file",
                "size": item_st.st_size,
                "modified": _mtime(item_st),
                "path": self.relative(item_path),
                "permissions": oct(item_st.st_mode)[-3:],
            })

        items.sort(key=lambda item: (item["type"] != "directory", item["name"]))
        return {"path": self.relative(path) or "/", "items": items}

    async def read(self, relative: str) -> Dict[str, Any]:
        path = self.resolve(relative)
        st = await self._stat(path)

        if stat_module.S_ISDIR(st.st_mode):
            raise FileOperationError("Cannot read directory", code="is_directory")
        if st.st_size > MAX_READ_BYTES:
            raise FileOperationError("File too large to read (max 5MB)", code="file_too_large")

        info: Dict[str, Any] = {
            "name": path.name,
            "path": self.relative(path),
            "size": st.st_size,
            "modified": _mtime(st),
        }

        if path.name.lower().endswith(BINARY_EXTENSIONS):
            info.update({
                "isBinary": True,
                "content": None,
                "message": "This file appears to be a binary file and cannot be edited as text.",
            })
            return info

        async with aiofiles.open(path, "rb") as f:
            raw = await f.read()

        try:
            info.update({"content": raw.decode("utf-8"), "encoding": "utf-8", "isBinary": False})
        except UnicodeDecodeError:
            info.update({
                "content": raw.decode("latin-1"),
                "encoding": "latin1",
                "isBinary": False,
                "warning": "File read with latin1 encoding (UTF-8 failed)",
            })
        return info

    async def write(self, relative: str, content: str) -> Dict[str, Any]:
        path = self.resolve(relative)
        if path == self.root:
            raise FileOperationError("Cannot write to the server directory itself", code="is_directory")
        if await aiofiles.os.path.isdir(path):
            raise FileOperationError("Cannot write to a directory", code="is_directory")

        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(content)

        logger.info("File written", path=str(path), size=len(content))
        return {"path": self.relative(path)}

    async def delete(self, relative: str, force: bool = False) -> Dict[str, Any]:
        path = self.resolve(relative)
        if path == self.root:
            raise AccessDeniedError("Cannot delete the server directory", code="root_delete")

        st = await self._stat(path)
        if stat_module.S_ISDIR(st.st_mode):
            if await aiofiles.os.listdir(path) and not force:
                raise FileOperationError(
                    "Directory is not empty. Use force=true to delete non-empty directory",
                    code="directory_not_empty",
                )
            await _rmtree(path)
            message = "Directory deleted"
        else:
            await aiofiles.os.remove(path)
            message = "File deleted"

        logger.info("Path deleted", path=str(path), force=force)
        return {"path": self.relative(path), "message": message}

    async def upload(self, directory: str, file_name: str, data: str, encoding: str = "base64") -> Dict[str, Any]:
        if not file_name or "/" in file_name or "\\" in file_name:
            raise FileOperationError("Invalid file name", code="bad_file_name")

        target_dir = self.resolve(directory)
        path = self.resolve(f"{self.relative(target_dir)}/{file_name}")

        if encoding == "base64":
            try:
                payload = base64.b64decode(data, validate=True)
            except (binascii.Error, ValueError) as e:
                raise FileOperationError(f"Invalid base64 payload: {e}", code="bad_payload") from e
        else:
            payload = data.encode("utf-8")

        await aiofiles.os.makedirs(target_dir, exist_ok=True)
        async with aiofiles.open(path, "wb") as f:
            await f.write(payload)

        logger.info("File uploaded", path=str(path), size=len(payload))
        return {"path": self.relative(path), "size": len(payload), "message": f"File uploaded successfully: {file_name}"}
