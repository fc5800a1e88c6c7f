# SPDX-License-Identifier: Apache-2.0
from collections.abc import Callable

import torch.nn as nn

from litevlm.config.model import ArchitectureConfig
from litevlm.utils.registry import ConstructorRegistry

ModelConstructor = Callable[[ArchitectureConfig], nn.Module]


class _ModelRegistry(ConstructorRegistry[nn.Module]):
    """Architecture id -> model constructor.

    Each entry also names the processor id used when a checkpoint does not
    declare its own `processor_class`.
    """

    def __init__(self) -> None:
        super().__init__("model")
        self._default_processors: dict[str, str] = {}

    def register(
        self,
        identifier: str,
        constructor: ModelConstructor,
        processor: str | None = None,
    ) -> None:
        super().register(identifier, constructor)
        with self._lock:
            if processor is None:
                self._default_processors.pop(identifier, None)
            else:
                self._default_processors[identifier] = processor

    def unregister(self, identifier: str) -> None:
        super().unregister(identifier)
        with self._lock:
            self._default_processors.pop(identifier, None)

    def default_processor(self, identifier: str) -> str | None:
        with self._lock:
            return self._default_processors.get(identifier)

    def resolve(self, identifier: str, config: ArchitectureConfig) -> nn.Module:
        return self.get_constructor(identifier)(config)


ModelRegistry = _ModelRegistry()
