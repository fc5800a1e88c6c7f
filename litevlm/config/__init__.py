# SPDX-License-Identifier: Apache-2.0

from litevlm.config.load import LoadConfig
from litevlm.config.model import (
    ArchitectureConfig,
    TextConfig,
    VisionConfig,
    load_architecture_config,
)
from litevlm.config.processor import (
    ProcessorConfig,
    load_processor_config,
    processor_config_from_dict,
)

__all__ = [
    "ArchitectureConfig",
    "LoadConfig",
    "ProcessorConfig",
    "TextConfig",
    "VisionConfig",
    "load_architecture_config",
    "load_processor_config",
    "processor_config_from_dict",
]
