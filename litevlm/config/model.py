# SPDX-License-Identifier: Apache-2.0
import json
import os
from dataclasses import field, fields
from typing import Any, Literal

from pydantic import ConfigDict, ValidationError
from pydantic.dataclasses import dataclass

from litevlm.exceptions import InvalidConfiguration
from litevlm.logger import init_logger

logger = init_logger(__name__)

CONFIG_NAME = "config.json"
GENERATION_CONFIG_NAME = "generation_config.json"

PositionPolicy = Literal["sequential", "mrope"]

# Families whose q/k/v projections carry a bias while o_proj does not.
_QKV_BIAS_MODEL_TYPES = ("qwen2", "qwen2_vl", "qwen2_vl_text", "qwen2_5_vl")

_frozen = ConfigDict(extra="ignore", arbitrary_types_allowed=True)


@dataclass(frozen=True, config=_frozen)
class TextConfig:

    model_type: str = "llama"

    vocab_size: int = 32000

    hidden_size: int = 4096

    intermediate_size: int = 11008

    num_hidden_layers: int = 32

    num_attention_heads: int = 32

    num_key_value_heads: int = 32

    head_dim: int = 128

    rms_norm_eps: float = 1e-6

    rope_theta: float = 10000.0

    rope_scaling: dict[str, Any] | None = None

    max_position_embeddings: int = 4096

    qkv_bias: bool = False

    o_bias: bool = False

    hidden_act: str = "silu"

    position_policy: PositionPolicy = "sequential"

    @property
    def mrope_section(self) -> list[int] | None:
        if not self.rope_scaling:
            return None
        return self.rope_scaling.get("mrope_section")

    @property
    def q_size(self) -> int:
        return self.num_attention_heads * self.head_dim

    @property
    def kv_size(self) -> int:
        return self.num_key_value_heads * self.head_dim


@dataclass(frozen=True, config=_frozen)
class VisionConfig:

    model_type: str = ""

    hidden_size: int = 768

    intermediate_size: int = 3072

    num_hidden_layers: int = 12

    num_attention_heads: int = 12

    num_channels: int = 3

    image_size: int = 224

    patch_size: int = 14

    spatial_merge_size: int = 1

    temporal_patch_size: int = 1

    out_hidden_size: int | None = None

    # Window span in pixels; 0 disables windowed attention.
    window_size: int = 0

    fullatt_block_indexes: tuple[int, ...] = ()

    layer_norm_eps: float = 1e-6

    hidden_act: str = "gelu_pytorch_tanh"

    rope_theta: float = 10000.0

    # Temporal rope scaling for video grids; None keeps one step per grid.
    tokens_per_second: float | None = None

    @property
    def head_dim(self) -> int:
        return self.hidden_size // self.num_attention_heads

    @property
    def num_patches(self) -> int:
        return (self.image_size // self.patch_size) ** 2


@dataclass(frozen=True, config=_frozen)
class ArchitectureConfig:

    architectures: list[str]

    model_type: str

    text_config: TextConfig

    vision_config: VisionConfig | None = None

    image_token_id: int | None = None

    video_token_id: int | None = None

    vision_start_token_id: int | None = None

    eos_token_id: list[int] = field(default_factory=list)

    tie_word_embeddings: bool = False

    projector_hidden_act: str = "gelu"

    multimodal_projector_bias: bool = True

    vision_feature_layer: int = -1

    vision_feature_select_strategy: str = "default"

    raw: dict[str, Any] | None = None

    @property
    def architecture(self) -> str:
        return self.architectures[0]

    @property
    def max_model_len(self) -> int:
        return self.text_config.max_position_embeddings

    @property
    def placeholder_token_ids(self) -> tuple[int, ...]:
        return tuple(
            t for t in (self.image_token_id, self.video_token_id) if t is not None
        )

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ArchitectureConfig":
        if not isinstance(raw, dict):
            raise InvalidConfiguration(
                f"expected a JSON object, got {type(raw).__name__}"
            )
        architectures = raw.get("architectures")
        if not architectures or not isinstance(architectures, list):
            raise InvalidConfiguration("missing 'architectures' list")

        try:
            text_config = _text_config_from_dict(raw)
            vision_raw = raw.get("vision_config")
            vision_config = (
                _vision_config_from_dict(vision_raw) if vision_raw else None
            )
            return cls(
                architectures=list(architectures),
                model_type=raw.get("model_type", text_config.model_type),
                text_config=text_config,
                vision_config=vision_config,
                image_token_id=_first_present(
                    raw, "image_token_id", "image_token_index"
                ),
                video_token_id=_first_present(
                    raw, "video_token_id", "video_token_index"
                ),
                vision_start_token_id=raw.get("vision_start_token_id"),
                eos_token_id=_as_id_list(
                    raw.get("eos_token_id")
                    if raw.get("eos_token_id") is not None
                    else (raw.get("text_config") or {}).get("eos_token_id")
                ),
                tie_word_embeddings=raw.get(
                    "tie_word_embeddings",
                    (raw.get("text_config") or {}).get("tie_word_embeddings", False),
                ),
                projector_hidden_act=raw.get("projector_hidden_act", "gelu"),
                multimodal_projector_bias=raw.get("multimodal_projector_bias", True),
                vision_feature_layer=raw.get("vision_feature_layer", -1),
                vision_feature_select_strategy=raw.get(
                    "vision_feature_select_strategy", "default"
                ),
                raw=raw,
            )
        except ValidationError as e:
            raise InvalidConfiguration(str(e)) from e
        except (TypeError, ValueError) as e:
            raise InvalidConfiguration(str(e)) from e


def _first_present(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _as_id_list(value: Any) -> list[int]:
    if value is None:
        return []
    if isinstance(value, int):
        return [value]
    return [int(v) for v in value]


def _text_config_from_dict(raw: dict[str, Any]) -> TextConfig:
    names = {f.name for f in fields(TextConfig)}
    text_raw = dict(raw.get("text_config") or {})
    # Older multimodal checkpoints keep language fields at the top level.
    for key, value in raw.items():
        if key in ("text_config", "vision_config"):
            continue
        text_raw.setdefault(key, value)

    model_type = text_raw.get("model_type", "llama")
    num_heads = text_raw.get("num_attention_heads", 32)
    hidden_size = text_raw.get("hidden_size", 4096)
    if text_raw.get("num_key_value_heads") is None:
        text_raw["num_key_value_heads"] = num_heads
    if text_raw.get("head_dim") is None:
        text_raw["head_dim"] = hidden_size // num_heads

    if "attention_bias" in text_raw:
        text_raw.setdefault("qkv_bias", text_raw["attention_bias"])
        text_raw.setdefault("o_bias", text_raw["attention_bias"])
    elif model_type in _QKV_BIAS_MODEL_TYPES:
        text_raw.setdefault("qkv_bias", True)

    rope_scaling = text_raw.get("rope_scaling") or text_raw.get("rope_parameters")
    text_raw["rope_scaling"] = rope_scaling
    if rope_scaling and "rope_theta" in rope_scaling:
        text_raw.setdefault("rope_theta", rope_scaling["rope_theta"])
    if "position_policy" not in text_raw:
        rope_type = (rope_scaling or {}).get("type") or (rope_scaling or {}).get(
            "rope_type"
        )
        is_mrope = rope_type == "mrope" or "mrope_section" in (rope_scaling or {})
        text_raw["position_policy"] = "mrope" if is_mrope else "sequential"

    return TextConfig(**{k: v for k, v in text_raw.items() if k in names})


def _vision_config_from_dict(vision_raw: dict[str, Any]) -> VisionConfig:
    names = {f.name for f in fields(VisionConfig)}
    vision_raw = dict(vision_raw)
    # Qwen2-VL naming: `embed_dim` is the tower width and `hidden_size` the
    # width after the patch merger.
    if "embed_dim" in vision_raw:
        if "hidden_size" in vision_raw:
            vision_raw["out_hidden_size"] = vision_raw["hidden_size"]
        vision_raw["hidden_size"] = vision_raw["embed_dim"]
        vision_raw.setdefault("hidden_act", "quick_gelu")
    renames = {
        "depth": "num_hidden_layers",
        "num_heads": "num_attention_heads",
        "in_chans": "num_channels",
        "in_channels": "num_channels",
    }
    for old, new in renames.items():
        if old in vision_raw:
            vision_raw.setdefault(new, vision_raw[old])
    if "intermediate_size" not in vision_raw and "hidden_size" in vision_raw:
        mlp_ratio = vision_raw.get("mlp_ratio", 4.0)
        vision_raw["intermediate_size"] = int(vision_raw["hidden_size"] * mlp_ratio)
    if "fullatt_block_indexes" in vision_raw:
        vision_raw["fullatt_block_indexes"] = tuple(
            vision_raw["fullatt_block_indexes"]
        )
    return VisionConfig(**{k: v for k, v in vision_raw.items() if k in names})


def _read_json(path: str) -> Any:
    try:
        with open(path) as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise InvalidConfiguration(f"{os.path.basename(path)} is not valid JSON: {e}") from e
    except OSError as e:
        raise InvalidConfiguration(f"cannot read {path}: {e}") from e


def load_architecture_config(model_dir: str) -> ArchitectureConfig:
    config_path = os.path.join(model_dir, CONFIG_NAME)
    if not os.path.isfile(config_path):
        raise InvalidConfiguration(f"{CONFIG_NAME} not found in {model_dir}")
    raw = _read_json(config_path)

    # generation_config.json may list extra end-of-sequence ids.
    generation_path = os.path.join(model_dir, GENERATION_CONFIG_NAME)
    if isinstance(raw, dict) and os.path.isfile(generation_path):
        generation = _read_json(generation_path)
        eos = generation.get("eos_token_id") if isinstance(generation, dict) else None
        if eos is not None:
            merged = _as_id_list(raw.get("eos_token_id")) + [
                t for t in _as_id_list(eos) if t not in _as_id_list(raw.get("eos_token_id"))
            ]
            raw = {**raw, "eos_token_id": merged}

    config = ArchitectureConfig.from_dict(raw)
    logger.debug(
        "Decoded %s config: %d text layers, vision=%s",
        config.architecture,
        config.text_config.num_hidden_layers,
        config.vision_config.model_type if config.vision_config else None,
    )
    return config
