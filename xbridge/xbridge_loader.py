"""
Locating native modules and publishing their registration tables.

A locator is one of: an already imported module object, a dotted import
name, a path to a `.py` file, or an `http(s)://` URL serving Python source.
"""
from __future__ import annotations

import importlib
import importlib.util
import os
import threading
import time
import types
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from xbridge.xbridge_config import (
    _dbg, get_http_backoff, get_http_retries, get_http_timeout, get_module_search_path,
)
from xbridge.xbridge_convert import TypeConverterRegistry
from xbridge.xbridge_errors import BridgeError, ModuleLoadError, RegistrationError
from xbridge.xbridge_registry import (
    CLASS_ACCESSOR, FUNCTION_ACCESSOR, ClassRegistry, FunctionRegistry,
)
from xbridge.xbridge_serialize import _encoding_from_content_type, _norm_text


def _is_url(locator: str) -> bool:
    return locator.startswith("http://") or locator.startswith("https://")


def _resolve_path(locator: str) -> Path:
    """Absolute paths stand; relative ones try the search path, then the CWD."""
    path = Path(os.path.expanduser(locator))
    if path.is_absolute():
        return path
    for base in get_module_search_path():
        candidate = base / path
        if candidate.is_file():
            return candidate
    return Path(os.getcwd()) / path


def _module_name_for(path_or_url: str) -> str:
    stem = Path(urlparse(path_or_url).path).stem
    return stem or "remote_module"


class ModuleLoader:
    """Loads modules and registers their functions and classes, all or nothing."""

    def __init__(self, functions: FunctionRegistry, classes: ClassRegistry,
                 converters: TypeConverterRegistry, client: Optional[httpx.Client] = None):
        self.functions = functions
        self.classes = classes
        self.converters = converters
        self.client = client
        self._modules: Dict[str, types.ModuleType] = {}
        self._lock = threading.RLock()

    # --- locating ---
    def _import(self, locator: Any) -> types.ModuleType:
        if isinstance(locator, types.ModuleType):
            return locator
        if isinstance(locator, os.PathLike):
            locator = os.fspath(locator)
        if not isinstance(locator, str) or not locator:
            raise ModuleLoadError(f"not a module locator: {locator!r}")
        if _is_url(locator):
            return self._exec_source(self._fetch(locator), _module_name_for(locator), locator)
        if locator.endswith(".py") or os.sep in locator or "/" in locator:
            return self._import_file(_resolve_path(locator))
        try:
            return importlib.import_module(locator)
        except ImportError as e:
            raise ModuleLoadError(f"cannot import module {locator!r}: {e}") from e
        except BridgeError:
            raise
        except Exception as e:
            raise ModuleLoadError(f"module {locator!r} failed to execute: {e}") from e

    def _import_file(self, path: Path) -> types.ModuleType:
        if not path.is_file():
            raise ModuleLoadError(f"module file not found: {path}")
        name = _module_name_for(str(path))
        spec = importlib.util.spec_from_file_location(name, path)
        if spec is None or spec.loader is None:
            raise ModuleLoadError(f"cannot load module from {path}")
        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except BridgeError:
            raise
        except Exception as e:
            raise ModuleLoadError(f"module {path} failed to execute: {e}") from e
        return module

    def _fetch(self, url: str) -> str:
        timeout = get_http_timeout()
        retries = get_http_retries()
        backoff = get_http_backoff()
        client = self.client or httpx.Client(timeout=timeout, follow_redirects=True)
        try:
            last_exc: Optional[Exception] = None
            for attempt in range(retries + 1):
                try:
                    resp = client.get(url)
                    if 200 <= resp.status_code < 300:
                        enc = _encoding_from_content_type(resp.headers.get("Content-Type"))
                        return _norm_text(resp.content, encoding=enc)
                    preview = (resp.text or "")[:200]
                    last_exc = ModuleLoadError(f"HTTP {resp.status_code} for {url}: {preview}")
                except httpx.HTTPError as e:
                    last_exc = e
                _dbg("fetch failed", url, "attempt", attempt, last_exc)
                if attempt < retries:
                    time.sleep(backoff * (2 ** attempt))
            if isinstance(last_exc, ModuleLoadError):
                raise last_exc
            raise ModuleLoadError(f"cannot fetch module {url}: {last_exc}") from last_exc
        finally:
            if client is not self.client:
                client.close()

    def _exec_source(self, source: str, name: str, origin: str) -> types.ModuleType:
        module = types.ModuleType(name)
        module.__file__ = origin
        try:
            code = compile(source, origin, "exec")
            exec(code, module.__dict__)
        except BridgeError:
            raise
        except Exception as e:
            raise ModuleLoadError(f"module {origin} failed to execute: {e}") from e
        return module

    # --- registration ---
    def load(self, locator: Any) -> str:
        """Loads a module and registers its tables. Returns the module name."""
        module = self._import(locator)
        name = module.__name__
        with self._lock:
            if name in self._modules:
                raise ModuleLoadError(f"module {name!r} is already loaded")
            accessors = []
            for attr in (CLASS_ACCESSOR, FUNCTION_ACCESSOR):
                fn = getattr(module, attr, None)
                if not callable(fn):
                    raise ModuleLoadError(f"module {name!r} does not define {attr}()")
                accessors.append(fn)
            try:
                class_table = list(accessors[0]())
                function_table = list(accessors[1]())
            except BridgeError:
                raise
            except Exception as e:
                raise ModuleLoadError(f"module {name!r} failed to build its tables: {e}") from e

            try:
                for cdesc in class_table:
                    self.classes.register_class(cdesc, name)
                for desc in function_table:
                    self.functions.register_function(desc, name)
                for cdesc in class_table:
                    cdesc.check(self.converters)
                for desc in function_table:
                    desc.check(self.converters)
            except RegistrationError:
                self.functions.unregister_module(name)
                self.classes.unregister_module(name)
                raise
            self._modules[name] = module
        _dbg("loaded module", name, len(function_table), "functions", len(class_table), "classes")
        return name

    def unload(self, name: str) -> List[str]:
        """Removes a module's functions and classes. Returns the removed names."""
        with self._lock:
            if name not in self._modules:
                raise ModuleLoadError(f"module {name!r} is not loaded")
            del self._modules[name]
            removed = self.functions.unregister_module(name) + self.classes.unregister_module(name)
        _dbg("unloaded module", name, removed)
        return removed

    def loaded(self) -> List[str]:
        return sorted(self._modules)

    def __contains__(self, name: str) -> bool:
        return name in self._modules


__all__ = ["ModuleLoader"]
