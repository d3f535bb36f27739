from __future__ import annotations

"""Translation of interpreter audit events into capability requests."""

import os
import shlex
from dataclasses import dataclass
from typing import Any, Callable


FILE_PERMISSION = "FilePermission"
SOCKET_PERMISSION = "SocketPermission"
URL_PERMISSION = "URLPermission"
ENVIRONMENT_PERMISSION = "EnvironmentPermission"
RUNTIME_PERMISSION = "RuntimePermission"

ACTION_ORDER = ("read", "write", "execute", "delete", "connect", "listen", "accept", "resolve")


@dataclass(frozen=True)
class CapabilityRequest:
    """One resource access the running program asked for."""

    kind: str
    target: str
    actions: str = ""

    @classmethod
    def of(cls, kind: str, target: str, *actions: str) -> "CapabilityRequest":
        return cls(kind=kind, target=target, actions=canonical_actions(actions))


def canonical_actions(actions: Any) -> str:
    """Return a comma-joined action set in a stable order."""

    if isinstance(actions, str):
        actions = actions.split(",")
    seen = {item.strip() for item in actions if isinstance(item, str) and item.strip()}
    known = [name for name in ACTION_ORDER if name in seen]
    extra = sorted(seen.difference(ACTION_ORDER))
    return ",".join(known + extra)


def _path_text(value: Any) -> str | None:
    if value is None or isinstance(value, int):
        return None
    try:
        text = os.fsdecode(value)
    except TypeError:
        return None
    return text or None


def _mode_actions(mode: Any, flags: Any) -> tuple[str, ...]:
    if isinstance(mode, str) and mode:
        if "+" in mode:
            return ("read", "write")
        if any(ch in mode for ch in "wax"):
            return ("write",)
        return ("read",)
    if isinstance(flags, int):
        if flags & os.O_RDWR:
            return ("read", "write")
        if flags & os.O_WRONLY:
            return ("write",)
    return ("read",)


def _file_request(path: Any, *actions: str) -> list[CapabilityRequest]:
    target = _path_text(path)
    if target is None:
        return []
    return [CapabilityRequest.of(FILE_PERMISSION, target, *actions)]


def _on_open(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    path = args[0] if args else None
    mode = args[1] if len(args) > 1 else None
    flags = args[2] if len(args) > 2 else None
    return _file_request(path, *_mode_actions(mode, flags))


def _on_read_dir(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    path = args[0] if args and args[0] is not None else "."
    return _file_request(path, "read")


def _on_write(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    return _file_request(args[0] if args else None, "write")


def _on_delete(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    return _file_request(args[0] if args else None, "delete")


def _on_rename(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    if len(args) < 2:
        return []
    return _file_request(args[0], "delete") + _file_request(args[1], "write")


def _first_argument(argv: Any) -> Any:
    if isinstance(argv, (str, bytes)) or hasattr(argv, "__fspath__"):
        return argv
    if isinstance(argv, (list, tuple)) and argv:
        return argv[0]
    return None


def _on_popen(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    executable = args[0] if args else None
    if executable is None and len(args) > 1:
        argv = args[1]
        if isinstance(argv, str):
            parts = shlex.split(argv) if argv.strip() else []
            executable = parts[0] if parts else None
        else:
            executable = _first_argument(argv)
    return _file_request(executable, "execute")


def _on_exec(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    return _file_request(args[0] if args else None, "execute")


def _on_spawn(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    return _file_request(args[1] if len(args) > 1 else None, "execute")


def _on_system(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    command = _path_text(args[0] if args else None)
    if command is None:
        return []
    try:
        parts = shlex.split(command)
    except ValueError:
        parts = command.split()
    if not parts:
        return []
    return _file_request(parts[0], "execute")


def _address_text(address: Any) -> str | None:
    if isinstance(address, tuple) and len(address) >= 2:
        host = address[0].decode("utf-8", "replace") if isinstance(address[0], bytes) else str(address[0])
        if ":" in host:
            host = f"[{host}]"
        return f"{host}:{address[1]}"
    return _path_text(address)


def _on_connect(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    target = _address_text(args[1] if len(args) > 1 else None)
    if target is None:
        return []
    return [CapabilityRequest.of(SOCKET_PERMISSION, target, "connect", "resolve")]


def _on_bind(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    target = _address_text(args[1] if len(args) > 1 else None)
    if target is None:
        return []
    return [CapabilityRequest.of(SOCKET_PERMISSION, target, "listen")]


def _on_resolve(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    host = args[0] if args else None
    if isinstance(host, bytes):
        host = host.decode("utf-8", "replace")
    if not isinstance(host, str) or not host:
        return []
    return [CapabilityRequest.of(SOCKET_PERMISSION, host, "resolve")]


def _on_url_request(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    url = args[0] if args else None
    if not isinstance(url, str) or not url:
        return []
    method = args[3] if len(args) > 3 and isinstance(args[3], str) else None
    if not method:
        method = "POST" if len(args) > 1 and args[1] is not None else "GET"
    return [CapabilityRequest(URL_PERMISSION, url, f"{method.upper()}:")]


def _on_environment(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    key = _path_text(args[0] if args else None)
    if key is None:
        return []
    return [CapabilityRequest.of(ENVIRONMENT_PERMISSION, key, "write")]


def _on_dlopen(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    name = _path_text(args[0] if args else None)
    if name is None:
        return []
    return [CapabilityRequest(RUNTIME_PERMISSION, f"loadLibrary.{name}", "")]


def _on_sqlite_connect(args: tuple[Any, ...]) -> list[CapabilityRequest]:
    database = _path_text(args[0] if args else None)
    if database is None or database == ":memory:" or database.startswith("file::memory:"):
        return []
    return _file_request(database, "read", "write")


AUDIT_TRANSLATORS: dict[str, Callable[[tuple[Any, ...]], list[CapabilityRequest]]] = {
    "open": _on_open,
    "os.listdir": _on_read_dir,
    "os.scandir": _on_read_dir,
    "os.mkdir": _on_write,
    "os.chmod": _on_write,
    "os.chown": _on_write,
    "os.utime": _on_write,
    "os.truncate": _on_write,
    "os.remove": _on_delete,
    "os.rmdir": _on_delete,
    "shutil.rmtree": _on_delete,
    "os.rename": _on_rename,
    "subprocess.Popen": _on_popen,
    "os.exec": _on_exec,
    "os.posix_spawn": _on_exec,
    "os.spawn": _on_spawn,
    "os.system": _on_system,
    "socket.connect": _on_connect,
    "socket.bind": _on_bind,
    "socket.getaddrinfo": _on_resolve,
    "socket.gethostbyname": _on_resolve,
    "urllib.Request": _on_url_request,
    "os.putenv": _on_environment,
    "os.unsetenv": _on_environment,
    "ctypes.dlopen": _on_dlopen,
    "sqlite3.connect": _on_sqlite_connect,
}


def requests_from_audit(event: str, args: tuple[Any, ...]) -> list[CapabilityRequest]:
    """Translate one audit event into zero or more capability requests."""

    translator = AUDIT_TRANSLATORS.get(event)
    if translator is None:
        return []
    return translator(tuple(args))
