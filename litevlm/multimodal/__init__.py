# SPDX-License-Identifier: Apache-2.0
from litevlm.multimodal.inputs import LMInput, ProcessedImage, ProcessedVideo
from litevlm.multimodal.processing import (
    BaseProcessor,
    ProcessorRegistry,
    get_processor,
)
from litevlm.multimodal.video import VideoInput

__all__ = [
    "BaseProcessor",
    "LMInput",
    "ProcessedImage",
    "ProcessedVideo",
    "ProcessorRegistry",
    "VideoInput",
    "get_processor",
]
