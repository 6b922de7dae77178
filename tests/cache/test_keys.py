import hashlib

import pytest

from aibridge.errors import InvalidRequest
from aibridge.schemas import RequestKind


MESSAGES = [{"role": "user", "content": "What is a layer cache?"}]


def test_same_inputs_build_identical_requests(key_builder):
    first = key_builder.build(RequestKind.COMPLETION, "gpt-4", MESSAGES, {"temperature": 0}, "team-a", 0)
    second = key_builder.build(RequestKind.COMPLETION, "gpt-4", MESSAGES, {"temperature": 0}, "team-a", 0)

    assert first == second
    assert first.identity() == second.identity()
    assert first.digest() == second.digest()


def test_option_order_does_not_change_the_key(key_builder):
    options_a = {"temperature": 0.2, "top_p": 1, "logit_bias": {"50256": -100, "42": 5}}
    options_b = {"logit_bias": {"42": 5, "50256": -100}, "top_p": 1, "temperature": 0.2}

    first = key_builder.build(RequestKind.COMPLETION, "gpt-4", MESSAGES, options_a)
    second = key_builder.build(RequestKind.COMPLETION, "gpt-4", MESSAGES, options_b)

    assert first.options_json == second.options_json
    assert first.identity() == second.identity()


def test_content_hash_covers_the_prompt_only(key_builder):
    cold = key_builder.build(RequestKind.COMPLETION, "gpt-4", MESSAGES, {"temperature": 0})
    warm = key_builder.build(RequestKind.COMPLETION, "gpt-4", MESSAGES, {"temperature": 0.9})

    assert cold.content_hash == warm.content_hash
    assert cold.content_hash == hashlib.sha256(cold.prompt.encode("utf-8")).hexdigest()
    assert cold.identity() != warm.identity()


def test_stream_flags_and_listeners_are_not_part_of_the_key(key_builder):
    plain = key_builder.build(RequestKind.COMPLETION, "gpt-4", MESSAGES, {"temperature": 0})
    streamed = key_builder.build(
        RequestKind.COMPLETION,
        "gpt-4",
        MESSAGES,
        {"temperature": 0, "stream": True, "messages": MESSAGES, "on_delta": print},
    )

    assert streamed.options == {"temperature": 0}
    assert plain.identity() == streamed.identity()


def test_partition_keys_produce_distinct_identities(key_builder):
    first = key_builder.build(RequestKind.COMPLETION, "gpt-4", MESSAGES, {"temperature": 1}, partition_key=1)
    second = key_builder.build(RequestKind.COMPLETION, "gpt-4", MESSAGES, {"temperature": 1}, partition_key=2)

    assert first.identity() != second.identity()
    assert first.digest() != second.digest()


def test_embeddings_never_carry_a_partition_key(key_builder):
    request = key_builder.build(RequestKind.EMBEDDING, "text-embedding-ada-002", "hello", {}, partition_key=7)

    assert request.partition_key == 0
    assert request.namespace == "embedding_text-embedding-ada-002"


@pytest.mark.parametrize("prompt", ["", "   ", [], None])
def test_empty_prompts_are_rejected(key_builder, prompt):
    with pytest.raises(InvalidRequest):
        key_builder.build(RequestKind.COMPLETION, "gpt-4", prompt, {})


def test_non_serializable_options_are_rejected(key_builder):
    with pytest.raises(InvalidRequest):
        key_builder.build(RequestKind.COMPLETION, "gpt-4", MESSAGES, {"seed": object()})


def test_nan_options_are_rejected(key_builder):
    with pytest.raises(InvalidRequest):
        key_builder.build(RequestKind.COMPLETION, "gpt-4", MESSAGES, {"temperature": float("nan")})


def test_missing_model_and_negative_partition_are_rejected(key_builder):
    with pytest.raises(InvalidRequest):
        key_builder.build(RequestKind.COMPLETION, "", MESSAGES, {})
    with pytest.raises(InvalidRequest):
        key_builder.build(RequestKind.COMPLETION, "gpt-4", MESSAGES, {}, partition_key=-1)


def test_string_prompt_never_collides_with_an_equivalent_message_list(key_builder):
    as_list = key_builder.build(RequestKind.COMPLETION, "gpt-4", [{"role": "user", "content": "x"}], {})
    as_text = key_builder.build(RequestKind.COMPLETION, "gpt-4", '[{"content":"x","role":"user"}]', {})

    assert as_list.prompt == '[{"content":"x","role":"user"}]'
    assert as_text.identity() != as_list.identity()
    assert as_text.content_hash != as_list.content_hash


def test_embedding_prompts_are_stored_verbatim_and_must_be_strings(key_builder):
    request = key_builder.build(RequestKind.EMBEDDING, "text-embedding-ada-002", "naïve text", {})

    assert request.prompt == "naïve text"
    with pytest.raises(InvalidRequest):
        key_builder.build(RequestKind.EMBEDDING, "text-embedding-ada-002", ["naïve text"], {})


@pytest.mark.parametrize("partition_key", ["1", 1.5, 2.0, True, None])
def test_non_integer_partition_keys_are_rejected(key_builder, partition_key):
    with pytest.raises(InvalidRequest):
        key_builder.build(RequestKind.COMPLETION, "gpt-4", MESSAGES, {}, partition_key=partition_key)
