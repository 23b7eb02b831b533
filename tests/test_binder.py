"""
Tests for the parameter binder.
"""

import random

from comfy_splice.binder import bind
from comfy_splice.graph import Graph, Reference
from comfy_splice.registry import DEFAULT_PARAMETERS, ParameterSpec, ParameterType


def _edges(graph: Graph) -> set:
    return {(consumer, name, ref) for consumer, name, ref in graph.edges()}


class TestBindBasics:
    def test_steps_written_and_nothing_else(self, split_graph):
        """Binding steps=40 changes exactly node 4's steps."""
        result = bind(split_graph, {"steps": 40})

        assert result.graph["4"].inputs["steps"] == 40
        expected = split_graph.to_api()
        expected["4"]["inputs"]["steps"] = 40
        assert result.graph.to_api() == expected
        assert result.diagnostics == []

    def test_input_graph_untouched(self, split_graph):
        before = split_graph.to_api()
        bind(split_graph, {"steps": 40, "prompt": "a fox"})
        assert split_graph.to_api() == before

    def test_locality(self, checkpoint_graph):
        """Node ids and edges are identical before and after."""
        result = bind(
            checkpoint_graph,
            {"prompt": "x", "negative_prompt": "y", "seed": 5, "width": 768, "cfg_scale": 4},
        )
        assert result.graph.ids_in_order() == checkpoint_graph.ids_in_order()
        assert _edges(result.graph) == _edges(checkpoint_graph)

    def test_idempotent(self, checkpoint_graph):
        params = {"prompt": "x", "steps": 30}
        once = bind(checkpoint_graph, params).graph
        twice = bind(once, params).graph
        assert once == twice


class TestPromptSelectors:
    def test_positive_and_negative_routed(self, checkpoint_graph):
        result = bind(checkpoint_graph, {"prompt": "a red fox", "negative_prompt": "lowres"})
        assert result.graph["6"].inputs["text"] == "a red fox"
        assert result.graph["7"].inputs["text"] == "lowres"

    def test_title_marks_negative(self):
        graph = Graph.from_api(
            {
                "1": {"class_type": "CLIPTextEncode", "inputs": {"text": ""}},
                "2": {
                    "class_type": "CLIPTextEncode",
                    "inputs": {"text": ""},
                    "_meta": {"title": "Negative Prompt"},
                },
            }
        )
        result = bind(graph, {"prompt": "p", "negative_prompt": "n"})
        assert result.graph["1"].inputs["text"] == "p"
        assert result.graph["2"].inputs["text"] == "n"


class TestCoercion:
    def test_numeric_strings_coerced(self, checkpoint_graph):
        result = bind(checkpoint_graph, {"steps": "30", "cfg_scale": "5.5"})
        assert result.graph["3"].inputs["steps"] == 30
        assert result.graph["3"].inputs["cfg"] == 5.5

    def test_float_for_int_with_integral_value(self, checkpoint_graph):
        assert bind(checkpoint_graph, {"steps": 30.0}).graph["3"].inputs["steps"] == 30

    def test_invalid_value_reported(self, checkpoint_graph):
        result = bind(checkpoint_graph, {"steps": "many"})
        assert result.graph["3"].inputs["steps"] == 25
        assert [d.code for d in result.diagnostics] == ["invalid-value"]

    def test_bool_rejected_for_int(self, checkpoint_graph):
        result = bind(checkpoint_graph, {"steps": True})
        assert [d.code for d in result.diagnostics] == ["invalid-value"]

    def test_string_written_as_is(self, checkpoint_graph):
        result = bind(checkpoint_graph, {"prompt": "  spaced  "})
        assert result.graph["6"].inputs["text"] == "  spaced  "


class TestDiagnostics:
    def test_no_target_is_not_fatal(self, split_graph):
        result = bind(split_graph, {"width": 512})
        assert [d.code for d in result.diagnostics] == ["no-target"]
        assert result.graph == split_graph

    def test_unknown_parameter(self, split_graph):
        result = bind(split_graph, {"colour": "blue"})
        assert [d.code for d in result.diagnostics] == ["unknown-parameter"]

    def test_none_value_skipped(self, split_graph):
        result = bind(split_graph, {"steps": None})
        assert result.diagnostics == []
        assert result.graph == split_graph

    def test_wired_input_left_alone(self):
        graph = Graph.from_api(
            {
                "1": {"class_type": "PrimitiveNode", "inputs": {"value": 3}},
                "2": {"class_type": "KSampler", "inputs": {"steps": ["1", 0]}},
            }
        )
        result = bind(graph, {"steps": 40})
        assert result.graph["2"].inputs["steps"] == Reference("1", 0)
        assert [d.code for d in result.diagnostics] == ["wired-input"]


class TestPaths:
    def test_fallback_used_on_structural_failure(self):
        spec = ParameterSpec(
            "label", ParameterType.STRING, ("Note",), "widgets_values.text", "inputs.label"
        )
        graph = Graph.from_api(
            {"1": {"class_type": "Note", "inputs": {}, "widgets_values": ["old"]}}
        )
        result = bind(graph, {"label": "new"}, {"label": spec})
        assert result.graph["1"].inputs["label"] == "new"
        assert result.graph["1"].body["widgets_values"] == ["old"]

    def test_primary_created_when_absent(self):
        graph = Graph.from_api({"1": {"class_type": "KSampler", "inputs": {}}})
        result = bind(graph, {"steps": 12}, DEFAULT_PARAMETERS)
        assert result.graph["1"].inputs["steps"] == 12


class TestSeed:
    def test_random_seed_resolved(self, checkpoint_graph):
        result = bind(checkpoint_graph, {"seed": -1}, rng=random.Random(7))
        seed = result.graph["3"].inputs["seed"]
        assert 0 <= seed <= 2**32 - 1
        assert result.values["seed"] == seed

    def test_explicit_seed_kept(self, checkpoint_graph):
        assert bind(checkpoint_graph, {"seed": 1234}).graph["3"].inputs["seed"] == 1234
