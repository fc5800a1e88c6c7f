# SPDX-License-Identifier: Apache-2.0
import threading

import pytest
import torch
import torch.nn as nn

from litevlm.config import ArchitectureConfig
from litevlm.exceptions import InvalidConfiguration, ModelLoadError, UnknownArchitecture
from litevlm.model_executor.model_loader import initialize_model
from litevlm.model_executor.models import ModelRegistry
from litevlm.model_executor.models.llama import LlamaForCausalLM
from litevlm.multimodal import ProcessorRegistry
from litevlm.utils.registry import ConstructorRegistry

from ..utils import LLAMA_CONFIG


def test_builtin_architectures():
    assert set(ModelRegistry.list_architectures()) >= {
        "LlamaForCausalLM",
        "Qwen2ForCausalLM",
        "LlavaForConditionalGeneration",
        "Qwen2VLForConditionalGeneration",
        "Qwen2_5_VLForConditionalGeneration",
    }
    assert ModelRegistry.default_processor("LlavaForConditionalGeneration") == "LlavaProcessor"
    assert ModelRegistry.default_processor("LlamaForCausalLM") == "TextProcessor"
    assert "Qwen2_5_VLProcessor" in ProcessorRegistry


def test_resolve_returns_exact_constructor():
    registry = ConstructorRegistry("test")
    calls = []

    def first(*args):
        calls.append(("first", args))
        return "first"

    registry.register("arch", first)
    assert registry.get_constructor("arch") is first
    assert registry.resolve("arch", 1, 2) == "first"
    assert calls == [("first", (1, 2))]


def test_last_registration_wins():
    registry = ConstructorRegistry("test")
    registry.register("arch", lambda: "old")
    registry.register("arch", lambda: "new")
    assert registry.resolve("arch") == "new"
    assert registry.list_architectures() == ["arch"]


def test_unknown_architecture():
    registry = ConstructorRegistry("test")
    registry.register("known", lambda: None)
    with pytest.raises(UnknownArchitecture) as exc_info:
        registry.resolve("missing")
    assert exc_info.value.architecture == "missing"
    assert exc_info.value.available == ["known"]
    assert isinstance(exc_info.value, ModelLoadError)


def test_resolve_architecture_order():
    registry = ConstructorRegistry("test")
    registry.register("b", lambda: None)
    registry.register("c", lambda: None)
    assert registry.resolve_architecture(["a", "c", "b"]) == "c"
    with pytest.raises(UnknownArchitecture):
        registry.resolve_architecture(["a", "d"])


def test_register_rejects_non_callable():
    with pytest.raises(TypeError):
        ConstructorRegistry("test").register("arch", "not callable")


def test_concurrent_registration():
    registry = ConstructorRegistry("test")

    def register(i):
        for j in range(50):
            registry.register(f"arch-{i}-{j}", lambda: None)
            registry.resolve_architecture([f"arch-{i}-{j}"])

    threads = [threading.Thread(target=register, args=(i,)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(registry.list_architectures()) == 200


def test_host_override_of_builtin():
    config = ArchitectureConfig.from_dict(LLAMA_CONFIG)
    built = []

    class CustomLlama(LlamaForCausalLM):
        pass

    def construct(arch_config):
        built.append(arch_config)
        return CustomLlama(arch_config)

    original = ModelRegistry.get_constructor("LlamaForCausalLM")
    ModelRegistry.register("LlamaForCausalLM", construct, processor="TextProcessor")
    try:
        model = initialize_model(config, "LlamaForCausalLM", "cpu", torch.float32)
        assert isinstance(model, CustomLlama)
        assert built == [config]
        assert not model.training
    finally:
        ModelRegistry.register("LlamaForCausalLM", original, processor="TextProcessor")
    assert ModelRegistry.get_constructor("LlamaForCausalLM") is original


def test_unregister_drops_default_processor():
    ModelRegistry.register("ScratchForTest", LlamaForCausalLM, processor="TextProcessor")
    ModelRegistry.unregister("ScratchForTest")
    assert "ScratchForTest" not in ModelRegistry
    assert ModelRegistry.default_processor("ScratchForTest") is None


def test_constructor_must_support_generation():
    config = ArchitectureConfig.from_dict(LLAMA_CONFIG)
    ModelRegistry.register("NotAModelForTest", lambda arch_config: nn.Linear(2, 2))
    try:
        with pytest.raises(TypeError):
            initialize_model(config, "NotAModelForTest", "cpu", torch.float32)
    finally:
        ModelRegistry.unregister("NotAModelForTest")


def test_constructor_rejecting_config():
    config = ArchitectureConfig.from_dict(LLAMA_CONFIG)
    # A text-only config has no vision tower to build.
    with pytest.raises(InvalidConfiguration):
        initialize_model(config, "LlavaForConditionalGeneration", "cpu", torch.float32)