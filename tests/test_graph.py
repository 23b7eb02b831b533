"""
Tests for the graph model and path utilities.
"""

import pytest

from comfy_splice.exceptions import PathResolutionError, TemplateParseError
from comfy_splice.graph import (
    MISSING,
    Graph,
    Node,
    OperationKind,
    Reference,
    classify,
    get_by_path,
    parse_path,
    set_by_path,
)


class TestPathParsing:
    def test_dotted_and_indexed(self):
        assert parse_path("inputs.text") == ("inputs", "text")
        assert parse_path("widgets_values[0]") == ("widgets_values", 0)
        assert parse_path("a.b[2][1].c") == ("a", "b", 2, 1, "c")

    @pytest.mark.parametrize("path", ["", ".a", "a.", "a[x]", "a..b", "[0]"])
    def test_malformed_paths_rejected(self, path):
        with pytest.raises(PathResolutionError):
            parse_path(path)


class TestGetByPath:
    def test_reads_nested_value(self):
        node = Node("1", "KSampler", {"inputs": {"steps": 20}, "widgets_values": [5, "x"]})
        assert get_by_path(node, "inputs.steps") == 20
        assert get_by_path(node, "widgets_values[1]") == "x"

    def test_missing_never_raises(self):
        node = Node("1", "KSampler", {"inputs": {"steps": 20}})
        assert get_by_path(node, "inputs.cfg") is MISSING
        assert get_by_path(node, "widgets_values[3]") is MISSING
        assert get_by_path(node, "inputs.steps.deeper") is MISSING
        assert get_by_path(node, "not a [path") is MISSING

    def test_missing_marker_is_falsy_singleton(self):
        import copy

        assert not MISSING
        assert copy.deepcopy(MISSING) is MISSING


class TestSetByPath:
    def test_creates_intermediate_containers(self):
        data = {}
        set_by_path(data, "inputs.nested.value", 3)
        assert data == {"inputs": {"nested": {"value": 3}}}

    def test_grows_list_with_missing_padding(self):
        data = {"widgets_values": ["a"]}
        set_by_path(data, "widgets_values[3]", "d")
        assert data["widgets_values"] == ["a", MISSING, MISSING, "d"]

    def test_never_truncates(self):
        data = {"widgets_values": [1, 2, 3, 4]}
        set_by_path(data, "widgets_values[1]", 9)
        assert data["widgets_values"] == [1, 9, 3, 4]

    def test_type_mismatch_raises(self):
        data = {"widgets_values": "not a list"}
        with pytest.raises(PathResolutionError):
            set_by_path(data, "widgets_values[0]", 1)

    def test_writes_into_node_body(self):
        node = Node("1", "CLIPTextEncode", {"inputs": {}})
        set_by_path(node, "inputs.text", "hello")
        assert node.inputs["text"] == "hello"


class TestGraphLoading:
    def test_parses_references(self, split_graph):
        assert split_graph["3"].inputs["clip"] == Reference("2", 0)
        assert split_graph["4"].inputs["steps"] == 20

    def test_round_trips_api_format(self):
        data = {
            "1": {"class_type": "UNETLoader", "inputs": {"unet_name": "x"}},
            "2": {"class_type": "KSampler", "inputs": {"model": ["1", 0]}, "_meta": {"title": "S"}},
        }
        assert Graph.from_api(data).to_api() == data

    def test_missing_class_type_is_fatal(self):
        with pytest.raises(TemplateParseError):
            Graph.from_api({"1": {"inputs": {}}})

    def test_non_object_is_fatal(self):
        with pytest.raises(TemplateParseError):
            Graph.from_api(["not", "a", "graph"])

    def test_invalid_json_is_fatal(self):
        with pytest.raises(TemplateParseError):
            Graph.load("{not json")

    def test_editor_format_uses_source_slot(self):
        editor = {
            "nodes": [
                {"id": 1, "type": "CheckpointLoaderSimple", "inputs": [], "widgets_values": ["m"]},
                {
                    "id": 2,
                    "type": "CLIPTextEncode",
                    "inputs": [{"name": "clip", "link": 7}],
                    "widgets_values": ["hi"],
                },
            ],
            "links": [[7, 1, 1, 2, 0, "CLIP"]],
        }
        graph = Graph.load(editor)
        assert graph["2"].inputs["clip"] == Reference("1", 1)

    def test_editor_link_with_bad_slot_is_fatal(self):
        editor = {
            "nodes": [
                {"id": 1, "type": "UNETLoader", "inputs": []},
                {"id": 2, "type": "KSampler", "inputs": [{"name": "model", "link": 7}]},
            ],
            "links": [[7, 1, "MODEL", 2, 0, "MODEL"]],
        }
        with pytest.raises(TemplateParseError) as exc_info:
            Graph.load(editor)
        assert exc_info.value.details["node_id"] == "2"

    def test_editor_input_without_name_is_fatal(self):
        editor = {
            "nodes": [
                {"id": 1, "type": "UNETLoader", "inputs": []},
                {"id": 2, "type": "KSampler", "inputs": [{"link": 7}]},
            ],
            "links": [[7, 1, 0, 2, 0, "MODEL"]],
        }
        with pytest.raises(TemplateParseError) as exc_info:
            Graph.from_editor(editor, source="broken.json")
        assert exc_info.value.details == {"node_id": "2", "source": "broken.json"}

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "wf.json"
        path.write_text('{"1": {"class_type": "LoadImage", "inputs": {"image": "a.png"}}}')
        graph = Graph.load(path)
        assert graph["1"].kind is OperationKind.LOAD_IMAGE


class TestGraphQueries:
    def test_ids_sort_numerically(self):
        graph = Graph(
            [Node(i, "X", {"inputs": {}}) for i in ("10", "9", "2", "abc")]
        )
        assert graph.ids_in_order() == ["2", "9", "10", "abc"]

    def test_next_ids_above_maximum(self, split_graph):
        assert split_graph.next_ids(2) == ["5", "6"]

    def test_next_ids_ignore_non_numeric(self):
        graph = Graph([Node("7", "X", {"inputs": {}}), Node("foo", "X", {"inputs": {}})])
        assert graph.next_ids(1) == ["8"]

    def test_consumers_filtered_by_slot(self, checkpoint_graph):
        model = checkpoint_graph.consumers_of("4", 0)
        clip = checkpoint_graph.consumers_of("4", 1)
        vae = checkpoint_graph.consumers_of("4", 2)
        assert model == [("3", "model")]
        assert sorted(clip) == [("6", "clip"), ("7", "clip")]
        assert vae == [("8", "vae")]

    def test_find_by_kind(self, checkpoint_graph):
        encoders = checkpoint_graph.find(OperationKind.TEXT_ENCODE)
        assert [n.node_id for n in encoders] == ["6", "7"]

    def test_copy_is_independent(self, split_graph):
        clone = split_graph.copy()
        clone["4"].inputs["steps"] = 99
        assert split_graph["4"].inputs["steps"] == 20

    def test_find_cycle(self):
        graph = Graph.from_api(
            {
                "1": {"class_type": "A", "inputs": {"x": ["2", 0]}},
                "2": {"class_type": "B", "inputs": {"x": ["1", 0]}},
            }
        )
        assert set(graph.find_cycle()) == {"1", "2"}

    def test_dag_has_no_cycle(self, checkpoint_graph):
        assert checkpoint_graph.find_cycle() is None


class TestClassification:
    def test_known_types(self):
        assert classify("CheckpointLoaderSimple") is OperationKind.CHECKPOINT_LOADER
        assert classify("LoraLoader") is OperationKind.ADAPTER_LOADER
        assert classify("easy loraStack") is OperationKind.ADAPTER_STACK

    def test_unknown_type_is_carried(self):
        graph = Graph.from_api({"1": {"class_type": "SomeCustomNode", "inputs": {"a": 1}}})
        assert graph["1"].kind is OperationKind.UNKNOWN
        assert graph.to_api()["1"]["inputs"] == {"a": 1}

    def test_slots(self):
        ckpt = Node("1", "CheckpointLoaderSimple", {"inputs": {}})
        clip = Node("2", "DualCLIPLoader", {"inputs": {}})
        assert (ckpt.model_slot, ckpt.clip_slot) == (0, 1)
        assert (clip.model_slot, clip.clip_slot) == (None, 0)
