# SPDX-License-Identifier: Apache-2.0
from litevlm.sample.sampler import Sampler, SamplerOutput

__all__ = ["Sampler", "SamplerOutput"]
