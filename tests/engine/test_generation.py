# SPDX-License-Identifier: Apache-2.0
import math

import pytest
import torch

from litevlm.engine.generation import GenerationEngine
from litevlm.exceptions import (
    ContextLengthExceeded,
    InferenceFailure,
    KVCacheInconsistencyError,
    TokenizationFailure,
)
from litevlm.multimodal import LMInput
from litevlm.sampling_params import SamplingParams

from ..utils import CharTokenizer, ScriptedModel

tok = CharTokenizer()
GREEDY = SamplingParams(temperature=0.0, max_tokens=50)


def ids(text: str) -> list[int]:
    return [tok.token_id(ch) for ch in text]


def prompt(text: str = "hello") -> LMInput:
    return LMInput(torch.tensor(tok.encode(text)), prompt=text)


def make_engine(model, max_model_len=64, prefill_chunk_size=4, eos_token_ids=(tok.EOS,)):
    return GenerationEngine(
        model,
        CharTokenizer(),
        max_model_len,
        eos_token_ids=eos_token_ids,
        prefill_chunk_size=prefill_chunk_size,
    )


def test_cache_grows_with_processed_tokens():
    model = ScriptedModel(ids("abc") + [tok.EOS])
    output = make_engine(model).generate(prompt("hello"), GREEDY)

    assert output.token_ids == ids("abc") + [tok.EOS]
    assert output.text == "abc"
    assert output.finish_reason == "stop"
    assert output.stop_reason == tok.EOS
    # Two prefill chunks, then one decode step per token before EOS.
    assert model.cache_lengths == [[4, 4], [6, 6], [7, 7], [8, 8], [9, 9]]
    assert model.fed_positions == [[0, 1, 2, 3], [4, 5], [6], [7], [8]]
    assert model.fed_tokens == tok.encode("hello") + ids("abc")
    assert model.num_embed_calls == 1
    assert output.stats.prompt_tokens == 6
    assert output.stats.generation_tokens == 4


@pytest.mark.parametrize("prompt_len", [1, 2, 4, 9])
def test_chunked_prefill_feeds_every_token_once(prompt_len):
    lm_input = LMInput(torch.tensor([tok.BOS] + ids("x" * (prompt_len - 1))))
    params = SamplingParams(temperature=0.0, max_tokens=3)

    chunked = ScriptedModel(ids("yz"))
    whole = ScriptedModel(ids("yz"))
    out_chunked = make_engine(chunked, prefill_chunk_size=4).generate(lm_input, params)
    out_whole = make_engine(whole, prefill_chunk_size=512).generate(lm_input, params)

    assert out_chunked.token_ids == out_whole.token_ids == ids("yzz")
    assert chunked.fed_tokens == whole.fed_tokens
    positions = [p for step in chunked.fed_positions for p in step]
    assert positions == list(range(prompt_len + 2))
    assert chunked.num_forward_calls == math.ceil(prompt_len / 4) + 2
    assert whole.num_forward_calls == 1 + 2


def test_greedy_picks_argmax():
    model = ScriptedModel([[0.1, 5.0, 0.2]], vocab_size=3)
    output = make_engine(model, eos_token_ids=()).generate(
        prompt(), SamplingParams(temperature=0.0, max_tokens=1)
    )
    assert output.token_ids == [1]
    assert output.finish_reason == "length"


@pytest.mark.parametrize(
    "params",
    [
        SamplingParams(max_tokens=1, temperature=-0.5),
        SamplingParams(max_tokens=1, top_p=-0.1),
    ],
)
def test_negative_sampling_params_are_greedy(params):
    model = ScriptedModel([[0.1, 5.0, 0.2]], vocab_size=3)
    output = make_engine(model, eos_token_ids=()).generate(prompt(), params)
    assert output.token_ids == [1]


def test_eos_stops_generation():
    model = ScriptedModel(ids("abcdef") + [tok.EOS])
    output = make_engine(model).generate(prompt(), GREEDY)
    assert len(output.token_ids) == 7
    assert output.token_ids[-1] == tok.EOS
    assert output.finish_reason == "stop"
    assert output.stop_reason == tok.EOS
    assert output.text == "abcdef"
    assert model.num_logit_calls == 7


def test_ignore_eos():
    model = ScriptedModel(ids("ab") + [tok.EOS])
    params = SamplingParams(temperature=0.0, max_tokens=5, ignore_eos=True)
    output = make_engine(model).generate(prompt(), params)
    assert output.token_ids == ids("ab") + [tok.EOS] * 3
    assert output.finish_reason == "length"
    assert output.stop_reason is None


def test_prompt_longer_than_context_fails_before_inference():
    model = ScriptedModel(ids("a"))
    engine = make_engine(model, max_model_len=4)
    with pytest.raises(ContextLengthExceeded) as exc_info:
        engine.stream(prompt("hello"), GREEDY)
    assert exc_info.value.num_tokens == 6
    assert exc_info.value.max_model_len == 4
    assert model.num_forward_calls == 0
    assert model.num_embed_calls == 0


def test_empty_prompt():
    engine = make_engine(ScriptedModel(ids("a")))
    with pytest.raises(TokenizationFailure):
        engine.generate(LMInput(torch.tensor([], dtype=torch.long)))


def test_context_exhausted_while_decoding():
    model = ScriptedModel(ids("a"))
    engine = make_engine(model, max_model_len=6)
    received = []
    with pytest.raises(ContextLengthExceeded) as exc_info:
        for output in engine.stream(prompt("abc"), GREEDY):
            received.append(output)
    # A 4 token prompt leaves room for two decode steps.
    assert len(received) == 3
    assert exc_info.value.num_tokens == 7
    assert model.num_forward_calls == 3
    assert all(cache.offset == 0 for cache in model.kv_caches)


def test_stop_string_is_not_leaked():
    model = ScriptedModel(ids("ab\n\ncd"))
    params = SamplingParams(temperature=0.0, max_tokens=50, stop=["\n\n"])
    outputs = list(make_engine(model).stream(prompt(), params))

    assert [o.text for o in outputs] == ["a", "b", "", ""]
    assert outputs[-1].finish_reason == "stop"
    assert outputs[-1].stop_reason == "\n\n"
    assert [o.index for o in outputs] == [0, 1, 2, 3]

    output = make_engine(ScriptedModel(ids("ab\n\ncd"))).generate(prompt(), params)
    assert output.text == "ab"
    assert len(output.token_ids) == 4


def test_partial_stop_string_is_released():
    model = ScriptedModel(ids("a\nbc"))
    params = SamplingParams(temperature=0.0, max_tokens=4, stop=["\n\n"])
    outputs = list(make_engine(model).stream(prompt(), params))
    assert [o.text for o in outputs] == ["a", "", "\nb", "c"]
    assert outputs[-1].finish_reason == "length"


def test_stop_token_ids():
    model = ScriptedModel(ids("abc"))
    params = SamplingParams(temperature=0.0, stop_token_ids=[tok.token_id("b")])
    output = make_engine(model).generate(prompt(), params)
    assert output.token_ids == ids("ab")
    assert output.finish_reason == "stop"
    assert output.stop_reason == tok.token_id("b")


def test_stop_criteria():
    model = ScriptedModel(ids("abcdef"))
    output = make_engine(model).generate(
        prompt(), GREEDY, stop_criteria=lambda token_ids, text: text.endswith("c")
    )
    assert output.text == "abc"
    assert output.finish_reason == "stop"
    assert output.stop_reason is None


def test_callback_aborts():
    model = ScriptedModel(ids("abcdef"))
    seen = []

    def callback(output):
        seen.append(output.text)
        return len(seen) < 2

    output = make_engine(model).generate(prompt(), GREEDY, callback=callback)
    assert seen == ["a", "b"]
    assert output.token_ids == ids("ab")
    assert output.finish_reason == "abort"
    assert all(cache.offset == 0 and cache.keys is None for cache in model.kv_caches)


def test_closing_stream_releases_cache():
    model = ScriptedModel(ids("abcdef"))
    stream = make_engine(model).stream(prompt(), GREEDY)
    first = next(stream)
    assert first.text == "a" and not first.finished()
    assert all(cache.offset == 6 for cache in model.kv_caches)

    stream.close()
    assert all(cache.offset == 0 and cache.keys is None for cache in model.kv_caches)
    assert model.num_logit_calls == 1


class FailingModel(ScriptedModel):

    def __init__(self, script, fail_at):
        super().__init__(script)
        self.fail_at = fail_at

    def forward(self, inputs_embeds, positions, kv_caches=None):
        if self.num_forward_calls + 1 == self.fail_at:
            self.kv_caches = kv_caches
            raise RuntimeError("CUDA out of memory")
        return super().forward(inputs_embeds, positions, kv_caches)


def test_runtime_errors_become_inference_failures():
    model = FailingModel(ids("abcdef"), fail_at=3)
    with pytest.raises(InferenceFailure, match="out of memory") as exc_info:
        make_engine(model, prefill_chunk_size=512).generate(prompt(), GREEDY)
    # The prefill and one decode step succeeded.
    assert exc_info.value.step == 2
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert all(cache.offset == 0 for cache in model.kv_caches)


class LeakyCacheModel(ScriptedModel):

    def forward(self, inputs_embeds, positions, kv_caches=None):
        hidden_states = super().forward(inputs_embeds, positions, kv_caches)
        if inputs_embeds.shape[0] == 1:
            kv = torch.zeros(1, 1, 1)
            kv_caches[0].update_and_fetch(kv, kv)
        return hidden_states


def test_cache_inconsistency_is_not_converted():
    model = LeakyCacheModel(ids("abc"))
    with pytest.raises(KVCacheInconsistencyError) as exc_info:
        make_engine(model, prefill_chunk_size=512).generate(prompt("ab"), GREEDY)
    assert exc_info.value.expected == 4
    assert exc_info.value.lengths == {0: 5}


def test_logprobs():
    model = ScriptedModel(ids("ab"))
    params = SamplingParams(temperature=0.0, max_tokens=2, logprobs=True)
    outputs = list(make_engine(model).stream(prompt(), params))

    expected = 10.0 - math.log(math.exp(10.0) + 63)
    assert [o.logprob for o in outputs] == pytest.approx([expected] * 2, abs=1e-5)

    no_logprobs = make_engine(ScriptedModel(ids("ab"))).generate(
        prompt(), SamplingParams(temperature=0.0, max_tokens=2)
    )
    assert no_logprobs.logprobs is None


def test_seeded_generation_is_reproducible():
    params = SamplingParams(temperature=1.0, max_tokens=8, seed=3)

    def run():
        model = ScriptedModel([[0.0] * 64])
        return make_engine(model, eos_token_ids=()).generate(prompt(), params).token_ids

    first = run()
    assert len(first) == 8
    assert run() == first


def test_incomplete_characters_are_held_back():
    model = ScriptedModel([tok.token_id("a"), tok.UNK, tok.token_id("b")])
    params = SamplingParams(temperature=0.0, max_tokens=3)
    outputs = list(make_engine(model).stream(prompt(), params))
    assert [o.text for o in outputs] == ["a", "", "\ufffdb"]


class ShiftedPositionsModel(ScriptedModel):

    def get_input_positions(self, input_ids, images=(), videos=()):
        # Four prompt tokens share two positions, like a merged image.
        return torch.tensor([0, 1, 1, 1]), -2


def test_decode_positions_include_rope_delta():
    model = ShiftedPositionsModel(ids("abc"))
    params = SamplingParams(temperature=0.0, max_tokens=3)
    make_engine(model).generate(prompt("abc"), params)
    assert model.fed_positions == [[0, 1, 1, 1], [2], [3]]


@pytest.mark.parametrize("prompt_len", [1, 2, 4, 5, 20])
def test_tiny_llama_chunked_prefill_matches(llama_model, prompt_len):
    params = SamplingParams(temperature=0.0, max_tokens=8, ignore_eos=True, logprobs=True)
    lm_input = LMInput(torch.tensor(tok.encode("the quick brown fox")[:prompt_len]))
    assert lm_input.num_tokens == prompt_len
    expected = make_engine(llama_model, 128, prefill_chunk_size=512).generate(lm_input, params)
    for chunk in (1, 4):
        output = make_engine(llama_model, 128, prefill_chunk_size=chunk).generate(lm_input, params)
        assert output.token_ids == expected.token_ids
        assert output.logprobs == pytest.approx(expected.logprobs, abs=1e-4)
    assert len(expected.token_ids) == 8


def test_invalid_chunk_size():
    with pytest.raises(ValueError):
        make_engine(ScriptedModel(ids("a")), prefill_chunk_size=0)
