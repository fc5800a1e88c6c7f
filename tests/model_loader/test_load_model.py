# SPDX-License-Identifier: Apache-2.0
import os

import pytest
import torch

from litevlm.config import load_architecture_config
from litevlm.exceptions import (
    CheckpointUnavailable,
    InvalidConfiguration,
    MissingWeights,
    UnknownArchitecture,
    WeightShapeMismatch,
    WeightsUnreadable,
)
from litevlm.model_executor.model_loader import load_model, resolve_checkpoint, weight_utils
from litevlm.model_executor.model_loader.weight_utils import list_weight_files

from ..utils import LLAMA_CONFIG, language_weights, load_tiny_model, write_checkpoint


@pytest.mark.parametrize("num_shards", [1, 3])
def test_every_parameter_is_loaded(tmp_path, cpu_load_config, num_shards):
    weights = language_weights(LLAMA_CONFIG)
    model_dir = write_checkpoint(tmp_path, LLAMA_CONFIG, weights, num_shards=num_shards)
    progress = []
    model = load_model(
        model_dir,
        load_architecture_config(model_dir),
        cpu_load_config,
        progress_callback=lambda done, total: progress.append((done, total)),
    )

    assert progress == [(i + 1, num_shards) for i in range(num_shards)]
    for name, param in model.named_parameters():
        assert torch.isfinite(param).all(), name
        assert param.dtype == torch.float32

    layer = model.model.layers[0]
    torch.testing.assert_close(
        layer.self_attn.qkv_proj.weight,
        torch.cat(
            [
                weights["model.layers.0.self_attn.q_proj.weight"],
                weights["model.layers.0.self_attn.k_proj.weight"],
                weights["model.layers.0.self_attn.v_proj.weight"],
            ]
        ),
    )
    torch.testing.assert_close(model.lm_head.weight, weights["lm_head.weight"])


def test_load_multimodal_checkpoints(llava_dir, qwen2_vl_dir, qwen2_5_vl_dir):
    for model_dir in (llava_dir, qwen2_vl_dir, qwen2_5_vl_dir):
        model = load_tiny_model(model_dir)
        assert all(torch.isfinite(p).all() for p in model.parameters())


def test_missing_weight(tmp_path):
    weights = language_weights(LLAMA_CONFIG)
    del weights["model.layers.1.mlp.down_proj.weight"]
    model_dir = write_checkpoint(tmp_path, LLAMA_CONFIG, weights)
    with pytest.raises(MissingWeights) as exc_info:
        load_tiny_model(model_dir)
    assert exc_info.value.parameter_name == "model.layers.1.mlp.down_proj.weight"


def test_incomplete_packed_group_is_missing(tmp_path):
    weights = language_weights(LLAMA_CONFIG)
    del weights["model.layers.0.self_attn.v_proj.weight"]
    model_dir = write_checkpoint(tmp_path, LLAMA_CONFIG, weights)
    with pytest.raises(MissingWeights) as exc_info:
        load_tiny_model(model_dir)
    assert "model.layers.0.self_attn.qkv_proj.weight" in exc_info.value.parameter_names


def test_shape_mismatch(tmp_path):
    weights = language_weights(LLAMA_CONFIG)
    weights["model.layers.0.self_attn.o_proj.weight"] = torch.zeros(32, 16)
    model_dir = write_checkpoint(tmp_path, LLAMA_CONFIG, weights)
    with pytest.raises(WeightShapeMismatch) as exc_info:
        load_tiny_model(model_dir)
    assert exc_info.value.tensor_name == "model.layers.0.self_attn.o_proj.weight"
    assert exc_info.value.expected == (32, 32)
    assert exc_info.value.actual == (32, 16)


def test_unused_tensors_are_ignored(tmp_path):
    weights = language_weights(LLAMA_CONFIG)
    weights["model.layers.0.extra.weight"] = torch.zeros(3)
    model = load_tiny_model(write_checkpoint(tmp_path, LLAMA_CONFIG, weights))
    assert "model.layers.0.extra.weight" not in dict(model.named_parameters())


def test_unreadable_shard(tmp_path):
    model_dir = write_checkpoint(tmp_path, LLAMA_CONFIG, language_weights(LLAMA_CONFIG))
    (tmp_path / "model-00001-of-00001.safetensors").write_bytes(b"\x00\x01garbage")
    with pytest.raises(WeightsUnreadable):
        load_tiny_model(model_dir)


def test_no_weight_files(tmp_path):
    model_dir = write_checkpoint(tmp_path, LLAMA_CONFIG, {})
    for name in os.listdir(model_dir):
        if name.endswith(".safetensors"):
            os.remove(os.path.join(model_dir, name))
    with pytest.raises(WeightsUnreadable):
        list_weight_files(model_dir)


def test_index_file_filters_shards(tmp_path):
    model_dir = write_checkpoint(tmp_path, LLAMA_CONFIG, language_weights(LLAMA_CONFIG))
    (tmp_path / "consolidated.safetensors").write_bytes(b"not listed in the index")
    (tmp_path / "model.safetensors.index.json").write_text(
        '{"weight_map": {"lm_head.weight": "model-00001-of-00001.safetensors"}}'
    )
    assert list_weight_files(model_dir) == [
        os.path.join(model_dir, "model-00001-of-00001.safetensors")
    ]


def test_unknown_architecture(tmp_path):
    config = {**LLAMA_CONFIG, "architectures": ["MambaForCausalLM"]}
    model_dir = write_checkpoint(tmp_path, config, language_weights(LLAMA_CONFIG))
    with pytest.raises(UnknownArchitecture):
        load_tiny_model(model_dir)


def test_invalid_configuration(tmp_path):
    model_dir = write_checkpoint(
        tmp_path, {**LLAMA_CONFIG, "hidden_act": "swish-7"}, language_weights(LLAMA_CONFIG)
    )
    with pytest.raises(InvalidConfiguration):
        load_tiny_model(model_dir)


def test_resolve_local_directory(tmp_path):
    assert resolve_checkpoint(tmp_path) == str(tmp_path)

    not_a_dir = tmp_path / "config.json"
    not_a_dir.write_text("{}")
    with pytest.raises(CheckpointUnavailable) as exc_info:
        resolve_checkpoint(not_a_dir)
    assert exc_info.value.location == str(not_a_dir)


def test_hub_failure_is_unavailable(tmp_path, monkeypatch, cpu_load_config):
    def offline(repo_id, **kwargs):
        raise OSError(f"cannot reach the hub for {repo_id}")

    monkeypatch.setattr(weight_utils, "snapshot_download", offline)
    monkeypatch.setattr(weight_utils.envs, "LITEVLM_CACHE_ROOT", str(tmp_path / "locks"))
    with pytest.raises(CheckpointUnavailable, match="cannot reach the hub"):
        resolve_checkpoint("someone/tiny-vlm", cpu_load_config)


def test_hub_download(tmp_path, monkeypatch, cpu_load_config):
    calls = []

    def download(repo_id, **kwargs):
        calls.append((repo_id, kwargs))
        return str(tmp_path)

    monkeypatch.setattr(weight_utils, "snapshot_download", download)
    monkeypatch.setattr(weight_utils.envs, "LITEVLM_CACHE_ROOT", str(tmp_path / "locks"))
    assert resolve_checkpoint("someone/tiny-vlm", cpu_load_config) == str(tmp_path)
    repo_id, kwargs = calls[0]
    assert repo_id == "someone/tiny-vlm"
    assert "*.safetensors" in kwargs["allow_patterns"]
