# SPDX-License-Identifier: Apache-2.0
"""Utilities for locating checkpoints and reading their tensors."""

import glob
import hashlib
import json
import os
import time
from collections.abc import Callable, Generator
from pathlib import Path

import filelock
import torch
from huggingface_hub import snapshot_download
from safetensors import SafetensorError
from safetensors.torch import load_file
from tqdm.auto import tqdm

from litevlm import envs
from litevlm.config.load import LoadConfig
from litevlm.exceptions import CheckpointUnavailable, WeightsUnreadable
from litevlm.logger import init_logger

logger = init_logger(__name__)

SAFE_WEIGHTS_INDEX_NAME = "model.safetensors.index.json"

# this makes it impossible to see the animation in the progress bar
# but will avoid messing up with multiprocessing, which wraps
# each line of output with some prefix.
_BAR_FORMAT = "{desc}: {percentage:3.0f}% Completed | {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]\n"  # noqa: E501


class DisabledTqdm(tqdm):

    def __init__(self, *args, **kwargs):
        kwargs["disable"] = True
        super().__init__(*args, **kwargs)


def get_lock(model_name_or_path: str | Path, cache_dir: str | None = None):
    lock_dir = cache_dir or envs.LITEVLM_CACHE_ROOT
    model_name_or_path = str(model_name_or_path)
    os.makedirs(lock_dir, exist_ok=True)
    model_name = model_name_or_path.replace("/", "-")
    hash_name = hashlib.sha256(model_name.encode()).hexdigest()
    lock_file_name = hash_name + model_name + ".lock"
    # mode 0o666 is required for the filelock to be shared across users
    return filelock.FileLock(os.path.join(lock_dir, lock_file_name), mode=0o666)


def resolve_checkpoint(location: str | Path, load_config: LoadConfig | None = None) -> str:
    """Return a local directory holding the checkpoint at `location`.

    Local directories are returned unchanged. Anything else is treated as a
    hub repository id and fetched with `snapshot_download`; any failure there
    is reported as `CheckpointUnavailable`.
    """
    load_config = load_config or LoadConfig()
    location = str(location)
    if os.path.isdir(location):
        return location
    if os.path.exists(location):
        raise CheckpointUnavailable(location, "not a directory")

    try:
        with get_lock(location, load_config.download_dir):
            start_time = time.perf_counter()
            folder = snapshot_download(
                location,
                allow_patterns=load_config.allow_patterns,
                cache_dir=load_config.download_dir,
                revision=load_config.revision,
                tqdm_class=DisabledTqdm,
            )
            time_taken = time.perf_counter() - start_time
    except Exception as e:
        raise CheckpointUnavailable(location, f"{type(e).__name__}: {e}") from e

    if time_taken > 0.5:
        logger.info("Time spent downloading %s: %.6f seconds", location, time_taken)
    return folder


def filter_duplicate_safetensors_files(
    weights_files: list[str], folder: str, index_file: str = SAFE_WEIGHTS_INDEX_NAME
) -> list[str]:
    # model.safetensors.index.json is a mapping from keys in the
    # torch state_dict to safetensors file holding that weight.
    index_file_name = os.path.join(folder, index_file)
    if not os.path.isfile(index_file_name):
        return weights_files

    try:
        with open(index_file_name) as f:
            weight_map = json.load(f)["weight_map"]
    except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
        raise WeightsUnreadable(f"{index_file}: {e}") from e
    files_in_index = {os.path.join(folder, name) for name in weight_map.values()}
    return [f for f in weights_files if f in files_in_index]


def list_weight_files(folder: str) -> list[str]:
    files = sorted(glob.glob(os.path.join(folder, "*.safetensors")))
    files = filter_duplicate_safetensors_files(files, folder)
    if not files:
        raise WeightsUnreadable(f"no *.safetensors files in {folder}")
    return files


def safetensors_weights_iterator(
    weights_files: list[str],
    use_tqdm_on_load: bool,
    progress_callback: Callable[[int, int], None] | None = None,
) -> Generator[tuple[str, torch.Tensor], None, None]:
    """Iterate over the tensors of safetensors shards, one shard at a time."""
    for i, st_file in enumerate(
        tqdm(
            weights_files,
            desc="Loading safetensors checkpoint shards",
            disable=not use_tqdm_on_load,
            bar_format=_BAR_FORMAT,
        )
    ):
        try:
            state_dict = load_file(st_file, device="cpu")
        except (OSError, SafetensorError, ValueError) as e:
            raise WeightsUnreadable(f"{os.path.basename(st_file)}: {e}") from e
        yield from state_dict.items()
        del state_dict
        if progress_callback is not None:
            progress_callback(i + 1, len(weights_files))


def load_weight_table(
    weights_files: list[str],
    use_tqdm_on_load: bool = False,
    progress_callback: Callable[[int, int], None] | None = None,
) -> dict[str, torch.Tensor]:
    table: dict[str, torch.Tensor] = {}
    for name, tensor in safetensors_weights_iterator(
        weights_files, use_tqdm_on_load, progress_callback
    ):
        if name in table:
            logger.warning("Tensor %s appears in more than one shard", name)
        table[name] = tensor
    return table
