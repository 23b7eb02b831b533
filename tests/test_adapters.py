"""
Tests for adapter specs and activation prompts.
"""

from comfy_splice.adapters import (
    AdapterSpec,
    applicable,
    coerce_weight,
    compose_activation_prompt,
)


class TestCoerceWeight:
    def test_numbers_and_strings(self):
        assert coerce_weight(0.5) == 0.5
        assert coerce_weight("0.75") == 0.75
        assert coerce_weight(2) == 2.0

    def test_non_numeric_defaults(self):
        assert coerce_weight(None) == 1.0
        assert coerce_weight("strong") == 1.0
        assert coerce_weight(True) == 1.0
        assert coerce_weight(float("nan")) == 1.0
        assert coerce_weight("x", default=0.3) == 0.3


class TestAdapterSpec:
    def test_weights_coerced_on_construction(self):
        spec = AdapterSpec(" ink.safetensors ", model_weight="0.8", conditioning_weight=None)
        assert spec.file_path == "ink.safetensors"
        assert spec.model_weight == 0.8
        assert spec.conditioning_weight == 1.0

    def test_sentinels_not_applicable(self):
        assert not AdapterSpec("").is_applicable
        assert not AdapterSpec("None").is_applicable
        assert not AdapterSpec("none").is_applicable
        assert AdapterSpec("a.safetensors").is_applicable

    def test_from_mapping_accepts_table_columns(self):
        spec = AdapterSpec.from_mapping(
            {
                "lora_name": "detail.safetensors",
                "model_strength": "0.6",
                "clip_strength": 0.4,
                "lora_order": "2",
                "activation_words": "detailed",
            }
        )
        assert spec == AdapterSpec(
            "detail.safetensors",
            model_weight=0.6,
            conditioning_weight=0.4,
            order=2,
            activation_text="detailed",
        )

    def test_from_mapping_loader_input_names(self):
        spec = AdapterSpec.from_mapping({"path": "a.pt", "strength_model": 0.2})
        assert (spec.file_path, spec.model_weight, spec.conditioning_weight) == ("a.pt", 0.2, 1.0)

    def test_to_dict(self):
        assert AdapterSpec("a.pt").to_dict()["file_path"] == "a.pt"


class TestApplicable:
    def test_sorted_by_order_stably(self):
        a = AdapterSpec("a", order=2)
        b = AdapterSpec("b", order=1)
        c = AdapterSpec("c", order=2)
        assert applicable([a, b, c]) == [b, a, c]

    def test_duplicates_kept(self):
        a = AdapterSpec("a")
        assert applicable([a, a]) == [a, a]

    def test_sentinels_dropped(self):
        assert applicable([AdapterSpec("None"), AdapterSpec("")]) == []


class TestActivationPrompt:
    def test_prepends_words_in_order(self):
        adapters = [
            AdapterSpec("b", order=2, activation_text="inkwash"),
            AdapterSpec("a", order=1, activation_text=" sketch "),
        ]
        assert compose_activation_prompt("a cat", adapters) == "sketch, inkwash, a cat"

    def test_no_words_returns_prompt(self):
        assert compose_activation_prompt("a cat", [AdapterSpec("a")]) == "a cat"
        assert compose_activation_prompt(None, []) is None

    def test_empty_prompt(self):
        assert compose_activation_prompt("", [AdapterSpec("a", activation_text="x")]) == "x"

    def test_sentinel_words_ignored(self):
        adapters = [AdapterSpec("None", activation_text="ghost")]
        assert compose_activation_prompt("p", adapters) == "p"
