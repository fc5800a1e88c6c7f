# SPDX-License-Identifier: Apache-2.0
import pytest

from litevlm.config import LoadConfig, load_architecture_config, load_processor_config
from litevlm.model_executor.models import ModelRegistry
from litevlm.multimodal import get_processor

from .utils import (
    LLAMA_CONFIG,
    LLAVA_CONFIG,
    QWEN2_5_VL_CONFIG,
    QWEN2_VL_CONFIG,
    QWEN_PREPROCESSOR_CONFIG,
    CharTokenizer,
    language_weights,
    llava_weights,
    load_tiny_model,
    qwen2_vl_weights,
    write_checkpoint,
)


@pytest.fixture
def cpu_load_config() -> LoadConfig:
    return LoadConfig(device="cpu", dtype="float32", use_tqdm_on_load=False)


@pytest.fixture
def tokenizer() -> CharTokenizer:
    return CharTokenizer()


@pytest.fixture
def llama_dir(tmp_path) -> str:
    return write_checkpoint(tmp_path / "llama", LLAMA_CONFIG, language_weights(LLAMA_CONFIG))


@pytest.fixture
def llava_dir(tmp_path) -> str:
    return write_checkpoint(tmp_path / "llava", LLAVA_CONFIG, llava_weights())


@pytest.fixture
def qwen2_vl_dir(tmp_path) -> str:
    return write_checkpoint(
        tmp_path / "qwen2_vl",
        QWEN2_VL_CONFIG,
        qwen2_vl_weights(),
        preprocessor_config=QWEN_PREPROCESSOR_CONFIG,
    )


@pytest.fixture
def qwen2_5_vl_dir(tmp_path) -> str:
    return write_checkpoint(
        tmp_path / "qwen2_5_vl",
        QWEN2_5_VL_CONFIG,
        qwen2_vl_weights(QWEN2_5_VL_CONFIG),
        preprocessor_config=QWEN_PREPROCESSOR_CONFIG,
    )


@pytest.fixture
def llama_model(llama_dir):
    return load_tiny_model(llama_dir)


@pytest.fixture
def processor_for(tokenizer):
    """Build the default processor of a checkpoint directory."""

    def build(model_dir: str):
        arch_config = load_architecture_config(model_dir)
        return get_processor(
            load_processor_config(model_dir, arch_config),
            tokenizer,
            arch_config,
            ModelRegistry.default_processor(arch_config.architecture),
        )

    return build
