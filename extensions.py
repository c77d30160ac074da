"""Plugin loading for EVL.

A plugin is a Python file defining ``evl_register(ext)``. It may also set
``EVL_EXTENSION_NAME`` and ``EVL_EXTENSION_API_VERSION``. A ``.evlx`` pointer
file lists plugin paths, one per line, relative to the pointer file.
"""

from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


EXTENSION_API_VERSION = 1

HOOK_NAMES = frozenset({"program_start", "program_end", "before_dispatch", "after_dispatch", "on_error"})


class EVLExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


Handler = Callable[..., None]


@dataclass
class HookRegistry:
    # hook -> [(priority, handler, plugin)], highest priority first
    _handlers: Dict[str, List[Tuple[int, Handler, str]]] = field(default_factory=dict)

    def on_event(self, hook: str, handler: Handler, *, priority: int, ext_name: str) -> None:
        if hook not in HOOK_NAMES:
            raise EVLExtensionError(f"Unknown hook '{hook}' requested by {ext_name}")
        bucket = self._handlers.setdefault(hook, [])
        bucket.append((priority, handler, ext_name))
        # stable: equal priorities keep registration order
        bucket.sort(key=lambda entry: -entry[0])

    def emit(self, hook: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _ext in self._handlers.get(hook, []):
            handler(*args, **kwargs)


@dataclass
class RuntimeServices:
    """Everything the plugins contributed, handed to the interpreter."""

    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    # (event class, plugin name); installed into the EventRegistry by the interpreter
    events: List[Tuple[type, str]] = field(default_factory=list)


class ExtensionAPI:
    """The object passed to ``evl_register``."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def register_event(self, event_cls: type) -> None:
        if not getattr(event_cls, "event_name", ""):
            raise EVLExtensionError(f"Event class {event_cls.__name__} has no event_name")
        self._services.events.append((event_cls, self._ext_name))

    def event(self, event_cls: type) -> type:
        """Class decorator form of ``register_event``."""
        self.register_event(event_cls)
        return event_cls

    def on_event(self, hook: str, handler: Optional[Handler] = None, *, priority: int = 0):
        registry = self._services.hook_registry
        if handler is not None:
            registry.on_event(hook, handler, priority=priority, ext_name=self._ext_name)
            return handler

        def deco(fn: Handler) -> Handler:
            registry.on_event(hook, fn, priority=priority, ext_name=self._ext_name)
            return fn

        return deco


def _module_name_for(path: str) -> str:
    stem = os.path.splitext(os.path.basename(path))[0]
    digest = hashlib.sha256(os.path.abspath(path).encode("utf-8")).hexdigest()[:12]
    return "evl_ext_" + "".join(ch if ch.isalnum() else "_" for ch in stem) + "_" + digest


def load_extension_module(path: str) -> Any:
    if not os.path.isfile(path):
        raise EVLExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(_module_name_for(path), path)
    if spec is None or spec.loader is None:
        raise EVLExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)

    # sibling imports resolve against the plugin's own directory
    plugin_dir = os.path.dirname(os.path.abspath(path))
    sys.path.insert(0, plugin_dir)
    try:
        spec.loader.exec_module(module)
    finally:
        if sys.path and sys.path[0] == plugin_dir:
            sys.path.pop(0)
    return module


def read_evlx(pointer_file: str) -> List[str]:
    """Plugin paths listed in a pointer file; ``#`` starts a comment."""
    if not os.path.isfile(pointer_file):
        raise EVLExtensionError(f".evlx file not found: {pointer_file}")
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    paths: List[str] = []
    with open(pointer_file, "r", encoding="utf-8") as handle:
        for raw in handle:
            entry = raw.split("#", 1)[0].strip()
            if entry:
                paths.append(os.path.normpath(os.path.join(base_dir, entry)))
    return paths


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    expanded: List[str] = []
    for path in paths:
        if path.lower().endswith(".evlx"):
            expanded.extend(read_evlx(path))
        else:
            expanded.append(os.path.abspath(path))
    return expanded


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def _register_module(module: Any, path: str, services: RuntimeServices) -> None:
    api_version = getattr(module, "EVL_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if api_version != EXTENSION_API_VERSION:
        raise EVLExtensionError(f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}")
    register = getattr(module, "evl_register", None)
    if not callable(register):
        raise EVLExtensionError(f"Extension {path} must define callable evl_register(ext)")
    ext_name = str(getattr(module, "EVL_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0]))
    register(ExtensionAPI(services=services, ext_name=ext_name))


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in gather_extension_paths(paths):
        _register_module(load_extension_module(path), path, services)
    return services
