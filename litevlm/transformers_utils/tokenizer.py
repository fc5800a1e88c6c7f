# SPDX-License-Identifier: Apache-2.0
from typing import Any

from transformers import AutoTokenizer

from litevlm.exceptions import TokenizationFailure
from litevlm.logger import init_logger

logger = init_logger(__name__)


def get_tokenizer(model_dir: str, trust_remote_code: bool = False, **kwargs) -> Any:
    """Load the checkpoint's tokenizer with `AutoTokenizer`."""
    logger.info("Loading tokenizer from %s", model_dir)
    try:
        return AutoTokenizer.from_pretrained(
            model_dir, trust_remote_code=trust_remote_code, **kwargs
        )
    except (OSError, ValueError, KeyError) as e:
        raise TokenizationFailure(f"cannot load tokenizer from {model_dir}: {e}") from e


def decode_tokens(tokenizer: Any, token_ids: list[int], skip_special_tokens: bool = True) -> str:
    try:
        return tokenizer.decode(token_ids, skip_special_tokens=skip_special_tokens)
    except (TypeError, ValueError, KeyError, OverflowError) as e:
        raise TokenizationFailure(f"cannot decode {len(token_ids)} tokens: {e}") from e
