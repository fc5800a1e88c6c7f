# SPDX-License-Identifier: Apache-2.0
"""Tiny checkpoints and stand-ins shared by the test suite."""

import json
import os
import re

import torch
import torch.nn as nn
from safetensors.torch import save_file

from litevlm.config import LoadConfig, load_architecture_config
from litevlm.model_executor.model_loader import load_model

VOCAB_SIZE = 64

TEXT_CONFIG = {
    "vocab_size": VOCAB_SIZE,
    "hidden_size": 32,
    "intermediate_size": 64,
    "num_hidden_layers": 2,
    "num_attention_heads": 4,
    "num_key_value_heads": 2,
    "max_position_embeddings": 128,
    "rms_norm_eps": 1e-6,
    "rope_theta": 10000.0,
    "hidden_act": "silu",
}

LLAMA_CONFIG = {
    "architectures": ["LlamaForCausalLM"],
    "model_type": "llama",
    "bos_token_id": 1,
    "eos_token_id": 2,
    "tie_word_embeddings": False,
    **TEXT_CONFIG,
}

LLAVA_CONFIG = {
    "architectures": ["LlavaForConditionalGeneration"],
    "model_type": "llava",
    "image_token_index": 3,
    "projector_hidden_act": "gelu",
    "vision_feature_layer": -1,
    "vision_feature_select_strategy": "default",
    "text_config": {"model_type": "llama", "eos_token_id": 2, **TEXT_CONFIG},
    "vision_config": {
        "model_type": "siglip_vision_model",
        "hidden_size": 16,
        "intermediate_size": 32,
        "num_hidden_layers": 2,
        "num_attention_heads": 2,
        "num_channels": 3,
        "image_size": 8,
        "patch_size": 4,
    },
}

QWEN2_VL_CONFIG = {
    "architectures": ["Qwen2VLForConditionalGeneration"],
    "model_type": "qwen2_vl",
    "eos_token_id": 2,
    "image_token_id": 3,
    "video_token_id": 4,
    "tie_word_embeddings": False,
    **TEXT_CONFIG,
    "max_position_embeddings": 256,
    "rope_theta": 1000000.0,
    "rope_scaling": {"type": "mrope", "mrope_section": [2, 1, 1]},
    "vision_config": {
        "depth": 2,
        "embed_dim": 16,
        "mlp_ratio": 2,
        "num_heads": 2,
        "in_chans": 3,
        "hidden_size": 32,
        "patch_size": 2,
        "spatial_merge_size": 2,
        "temporal_patch_size": 2,
    },
}

QWEN2_5_VL_CONFIG = {
    **QWEN2_VL_CONFIG,
    "architectures": ["Qwen2_5_VLForConditionalGeneration"],
    "model_type": "qwen2_5_vl",
    "vision_config": {
        "depth": 2,
        "hidden_size": 16,
        "intermediate_size": 32,
        "out_hidden_size": 32,
        "num_heads": 2,
        "in_chans": 3,
        "hidden_act": "silu",
        "patch_size": 2,
        "spatial_merge_size": 2,
        "temporal_patch_size": 2,
        "window_size": 8,
        "fullatt_block_indexes": [1],
    },
}

QWEN_PREPROCESSOR_CONFIG = {
    "min_pixels": 16,
    "max_pixels": 4096,
    "image_mean": [0.5, 0.5, 0.5],
    "image_std": [0.5, 0.5, 0.5],
}


class _Rand:

    def __init__(self, seed: int = 0):
        self.generator = torch.Generator().manual_seed(seed)

    def __call__(self, *shape: int) -> torch.Tensor:
        return torch.randn(*shape, generator=self.generator) * 0.1

    def norm(self, size: int) -> torch.Tensor:
        return 1.0 + self(size)


def language_weights(
    config: dict,
    prefix: str = "model.",
    head: str = "lm_head.",
    qkv_bias: bool = False,
    seed: int = 0,
) -> dict[str, torch.Tensor]:
    """Transformers-named tensors of a Llama-style language stack."""
    rand = _Rand(seed)
    hidden = config["hidden_size"]
    inter = config["intermediate_size"]
    heads = config["num_attention_heads"]
    head_dim = hidden // heads
    q_size = heads * head_dim
    kv_size = config["num_key_value_heads"] * head_dim

    weights = {
        f"{prefix}embed_tokens.weight": rand(config["vocab_size"], hidden),
        f"{prefix}norm.weight": rand.norm(hidden),
        f"{head}weight": rand(config["vocab_size"], hidden),
    }
    for i in range(config["num_hidden_layers"]):
        p = f"{prefix}layers.{i}."
        weights.update(
            {
                p + "self_attn.q_proj.weight": rand(q_size, hidden),
                p + "self_attn.k_proj.weight": rand(kv_size, hidden),
                p + "self_attn.v_proj.weight": rand(kv_size, hidden),
                p + "self_attn.o_proj.weight": rand(hidden, q_size),
                p + "self_attn.rotary_emb.inv_freq": rand(head_dim // 2),
                p + "mlp.gate_proj.weight": rand(inter, hidden),
                p + "mlp.up_proj.weight": rand(inter, hidden),
                p + "mlp.down_proj.weight": rand(hidden, inter),
                p + "input_layernorm.weight": rand.norm(hidden),
                p + "post_attention_layernorm.weight": rand.norm(hidden),
            }
        )
        if qkv_bias:
            weights[p + "self_attn.q_proj.bias"] = rand(q_size)
            weights[p + "self_attn.k_proj.bias"] = rand(kv_size)
            weights[p + "self_attn.v_proj.bias"] = rand(kv_size)
    return weights


def siglip_weights(config: dict, prefix: str = "vision_tower.vision_model.") -> dict:
    rand = _Rand(1)
    e = config["hidden_size"]
    inter = config["intermediate_size"]
    c, p = config["num_channels"], config["patch_size"]
    num_patches = (config["image_size"] // p) ** 2
    weights = {
        f"{prefix}embeddings.patch_embedding.weight": rand(e, c, p, p),
        f"{prefix}embeddings.patch_embedding.bias": rand(e),
        f"{prefix}embeddings.position_embedding.weight": rand(num_patches, e),
        f"{prefix}post_layernorm.weight": rand.norm(e),
        f"{prefix}post_layernorm.bias": rand(e),
    }
    for i in range(config["num_hidden_layers"]):
        lp = f"{prefix}encoder.layers.{i}."
        for proj in ("q_proj", "k_proj", "v_proj", "out_proj"):
            weights[f"{lp}self_attn.{proj}.weight"] = rand(e, e)
            weights[f"{lp}self_attn.{proj}.bias"] = rand(e)
        for norm in ("layer_norm1", "layer_norm2"):
            weights[f"{lp}{norm}.weight"] = rand.norm(e)
            weights[f"{lp}{norm}.bias"] = rand(e)
        weights[f"{lp}mlp.fc1.weight"] = rand(inter, e)
        weights[f"{lp}mlp.fc1.bias"] = rand(inter)
        weights[f"{lp}mlp.fc2.weight"] = rand(e, inter)
        weights[f"{lp}mlp.fc2.bias"] = rand(e)
    return weights


def llava_weights(config: dict = LLAVA_CONFIG) -> dict[str, torch.Tensor]:
    rand = _Rand(2)
    text, vision = config["text_config"], config["vision_config"]
    weights = language_weights(text, prefix="language_model.model.", head="language_model.lm_head.")
    weights.update(siglip_weights(vision))
    weights.update(
        {
            "multi_modal_projector.linear_1.weight": rand(text["hidden_size"], vision["hidden_size"]),
            "multi_modal_projector.linear_1.bias": rand(text["hidden_size"]),
            "multi_modal_projector.linear_2.weight": rand(text["hidden_size"], text["hidden_size"]),
            "multi_modal_projector.linear_2.bias": rand(text["hidden_size"]),
        }
    )
    return weights


def qwen2_vl_weights(config: dict = QWEN2_VL_CONFIG) -> dict[str, torch.Tensor]:
    rand = _Rand(3)
    vision = config["vision_config"]
    qwen2_5 = "embed_dim" not in vision
    e = vision["hidden_size"] if qwen2_5 else vision["embed_dim"]
    out = vision["out_hidden_size"] if qwen2_5 else vision["hidden_size"]
    inter = vision.get("intermediate_size") or int(e * vision["mlp_ratio"])
    c, t, p = vision["in_chans"], vision["temporal_patch_size"], vision["patch_size"]
    merged = e * vision["spatial_merge_size"] ** 2

    weights = language_weights(config, qkv_bias=True, seed=4)
    weights["visual.patch_embed.proj.weight"] = rand(e, c, t, p, p)
    for i in range(vision["depth"]):
        bp = f"visual.blocks.{i}."
        weights[bp + "attn.qkv.weight"] = rand(3 * e, e)
        weights[bp + "attn.qkv.bias"] = rand(3 * e)
        weights[bp + "attn.proj.weight"] = rand(e, e)
        weights[bp + "attn.proj.bias"] = rand(e)
        for norm in ("norm1", "norm2"):
            weights[f"{bp}{norm}.weight"] = rand.norm(e)
            if not qwen2_5:
                weights[f"{bp}{norm}.bias"] = rand(e)
        if qwen2_5:
            for proj in ("gate_proj", "up_proj"):
                weights[f"{bp}mlp.{proj}.weight"] = rand(inter, e)
                weights[f"{bp}mlp.{proj}.bias"] = rand(inter)
            weights[bp + "mlp.down_proj.weight"] = rand(e, inter)
            weights[bp + "mlp.down_proj.bias"] = rand(e)
        else:
            weights[bp + "mlp.fc1.weight"] = rand(inter, e)
            weights[bp + "mlp.fc1.bias"] = rand(inter)
            weights[bp + "mlp.fc2.weight"] = rand(e, inter)
            weights[bp + "mlp.fc2.bias"] = rand(e)
    weights["visual.merger.ln_q.weight"] = rand.norm(e)
    if not qwen2_5:
        weights["visual.merger.ln_q.bias"] = rand(e)
    weights["visual.merger.mlp.0.weight"] = rand(merged, merged)
    weights["visual.merger.mlp.0.bias"] = rand(merged)
    weights["visual.merger.mlp.2.weight"] = rand(out, merged)
    weights["visual.merger.mlp.2.bias"] = rand(out)
    return weights


def write_checkpoint(
    path,
    config: dict,
    weights: dict[str, torch.Tensor],
    preprocessor_config: dict | None = None,
    num_shards: int = 1,
) -> str:
    os.makedirs(path, exist_ok=True)
    with open(os.path.join(path, "config.json"), "w") as f:
        json.dump(config, f)
    if preprocessor_config is not None:
        with open(os.path.join(path, "preprocessor_config.json"), "w") as f:
            json.dump(preprocessor_config, f)
    names = sorted(weights)
    for shard in range(num_shards):
        shard_names = names[shard::num_shards]
        save_file(
            {n: weights[n].contiguous() for n in shard_names},
            os.path.join(path, f"model-{shard + 1:05d}-of-{num_shards:05d}.safetensors"),
        )
    return str(path)


class CharTokenizer:
    """Character-level stand-in for a transformers tokenizer.

    Ids below `OFFSET` are special; `UNK` decodes to U+FFFD so streams can
    be tested against incomplete characters.
    """

    PAD, BOS, EOS, IMAGE, VIDEO, UNK = 0, 1, 2, 3, 4, 5
    OFFSET = 10
    CHARS = "abcdefghijklmnopqrstuvwxyz .,:!?\n"

    special_tokens = {
        "<pad>": PAD,
        "<s>": BOS,
        "</s>": EOS,
        "<image>": IMAGE,
        "<|image_pad|>": IMAGE,
        "<|video_pad|>": VIDEO,
    }

    eos_token_id = EOS
    bos_token_id = BOS

    def encode(self, text: str, add_special_tokens: bool = True) -> list[int]:
        ids = [self.BOS] if add_special_tokens else []
        pattern = "|".join(re.escape(t) for t in self.special_tokens)
        for piece in re.split(f"({pattern})", text):
            if piece in self.special_tokens:
                ids.append(self.special_tokens[piece])
                continue
            for ch in piece:
                ids.append(self.OFFSET + self.CHARS.index(ch) if ch in self.CHARS else self.UNK)
        return ids

    def token_id(self, ch: str) -> int:
        return self.OFFSET + self.CHARS.index(ch)

    def decode(self, token_ids, skip_special_tokens: bool = True) -> str:
        names = {v: k for k, v in self.special_tokens.items()}
        pieces = []
        for i in token_ids:
            if i >= self.OFFSET + len(self.CHARS):
                # Unused ids decode to nothing, like added special tokens.
                continue
            if i >= self.OFFSET:
                pieces.append(self.CHARS[i - self.OFFSET])
            elif i == self.UNK:
                pieces.append("\ufffd")
            elif not skip_special_tokens:
                pieces.append(names.get(i, ""))
        return "".join(pieces)

    def convert_tokens_to_ids(self, token: str) -> int:
        return self.special_tokens[token]

    def apply_chat_template(self, messages, tokenize=False, add_generation_prompt=False):
        assert not tokenize
        parts = []
        for message in messages:
            content = message["content"]
            if not isinstance(content, str):
                content = "".join(
                    item["text"] if item["type"] == "text" else "<image>" for item in content
                )
            parts.append(f"{message['role']}: {content}\n")
        if add_generation_prompt:
            parts.append("assistant: ")
        return "".join(parts)


class ScriptedModel(nn.Module):
    """Model that emits `script[i]` at step `i` whatever its input.

    A script entry is a token id, or a list of logits used verbatim. The
    last entry repeats once the script runs out. Every layer cache grows
    by the number of fed tokens, as a real decoder's would.
    """

    supports_multimodal = False
    weight_prefix_rules: list[tuple[str, str]] = []

    def __init__(self, script, num_layers: int = 2, vocab_size: int = VOCAB_SIZE):
        super().__init__()
        self.config = None
        self.script = list(script)
        self.vocab_size = vocab_size
        self._num_layers = num_layers
        self.anchor = nn.Parameter(torch.zeros(1), requires_grad=False)
        self.num_embed_calls = 0
        self.num_forward_calls = 0
        self.num_logit_calls = 0
        self.fed_tokens: list[int] = []
        self.cache_lengths: list[list[int]] = []
        self.fed_positions: list[list[int]] = []
        self.kv_caches = None

    @property
    def num_layers(self) -> int:
        return self._num_layers

    def sanitize_weights(self, weights):
        return weights

    def embed_input_ids(self, input_ids):
        return input_ids.float().unsqueeze(-1)

    def get_input_embeddings(self, input_ids, images=(), videos=()):
        self.num_embed_calls += 1
        return self.embed_input_ids(input_ids)

    def get_input_positions(self, input_ids, images=(), videos=()):
        return torch.arange(len(input_ids)), 0

    def forward(self, inputs_embeds, positions, kv_caches=None):
        self.num_forward_calls += 1
        self.kv_caches = kv_caches
        n = inputs_embeds.shape[0]
        self.fed_tokens += inputs_embeds[:, 0].long().tolist()
        self.fed_positions.append(positions.tolist())
        for cache in kv_caches:
            kv = torch.zeros(1, n, 1)
            cache.update_and_fetch(kv, kv)
        self.cache_lengths.append([cache.offset for cache in kv_caches])
        return inputs_embeds

    def compute_logits(self, hidden_states):
        entry = self.script[min(self.num_logit_calls, len(self.script) - 1)]
        self.num_logit_calls += 1
        if isinstance(entry, int):
            logits = torch.zeros(hidden_states.shape[0], self.vocab_size)
            logits[:, entry] = 10.0
            return logits
        return torch.tensor([entry], dtype=torch.float32).expand(hidden_states.shape[0], -1)


def load_tiny_model(model_dir: str) -> nn.Module:
    arch_config = load_architecture_config(model_dir)
    return load_model(
        model_dir, arch_config, LoadConfig(device="cpu", dtype="float32", use_tqdm_on_load=False)
    )
