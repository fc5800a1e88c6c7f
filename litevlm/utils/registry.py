# SPDX-License-Identifier: Apache-2.0
import threading
from collections.abc import Callable, Iterable
from typing import Any, Generic, TypeVar

from litevlm.exceptions import UnknownArchitecture

T = TypeVar("T")


class ConstructorRegistry(Generic[T]):
    """Thread-safe mapping from an identifier to a constructor.

    Re-registering an id replaces the previous entry, which is how host
    applications override built-ins. Resolution is a pure lookup followed
    by a call to the constructor.
    """

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._constructors: dict[str, Callable[..., T]] = {}
        self._lock = threading.Lock()

    def register(self, identifier: str, constructor: Callable[..., T]) -> None:
        if not callable(constructor):
            raise TypeError(f"{self.kind} constructor for {identifier!r} is not callable")
        with self._lock:
            self._constructors[identifier] = constructor

    def unregister(self, identifier: str) -> None:
        with self._lock:
            self._constructors.pop(identifier, None)

    def get_constructor(self, identifier: str) -> Callable[..., T]:
        with self._lock:
            constructor = self._constructors.get(identifier)
            available = list(self._constructors)
        if constructor is None:
            raise UnknownArchitecture(identifier, available)
        return constructor

    def resolve(self, identifier: str, *args: Any, **kwargs: Any) -> T:
        return self.get_constructor(identifier)(*args, **kwargs)

    def resolve_architecture(self, identifiers: Iterable[str]) -> str:
        """Return the first of `identifiers` that is registered."""
        identifiers = list(identifiers)
        with self._lock:
            for identifier in identifiers:
                if identifier in self._constructors:
                    return identifier
            available = list(self._constructors)
        raise UnknownArchitecture(
            identifiers[0] if len(identifiers) == 1 else identifiers, available
        )

    def list_architectures(self) -> list[str]:
        with self._lock:
            return sorted(self._constructors)

    def __contains__(self, identifier: str) -> bool:
        with self._lock:
            return identifier in self._constructors
