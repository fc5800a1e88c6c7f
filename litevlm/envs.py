# SPDX-License-Identifier: Apache-2.0
import os

LITEVLM_LOGGING_LEVEL = os.getenv("LITEVLM_LOGGING_LEVEL", "INFO").upper()
LITEVLM_CACHE_ROOT = os.path.expanduser(
    os.getenv("LITEVLM_CACHE_ROOT", "~/.cache/litevlm")
)
LITEVLM_PREFILL_CHUNK_SIZE = int(os.getenv("LITEVLM_PREFILL_CHUNK_SIZE", "512"))
LITEVLM_MAX_MODEL_LEN = (
    int(os.environ["LITEVLM_MAX_MODEL_LEN"])
    if os.getenv("LITEVLM_MAX_MODEL_LEN")
    else None
)
LITEVLM_USE_TQDM_ON_LOAD = (
    os.getenv("LITEVLM_USE_TQDM_ON_LOAD", "True").lower() == "true"
)
