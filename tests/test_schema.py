"""
Tests for executor schema discovery.

Async discovery is exercised through httpx.MockTransport; the blocking
variant through a mocked ExecutorClient.
"""

import asyncio
from unittest.mock import MagicMock

import httpx
import pytest

from comfy_splice.exceptions import ExecutorConnectionError
from comfy_splice.http_client import AsyncHttpClient
from comfy_splice.schema import (
    SchemaInfo,
    combo_options,
    discover_schema,
    discover_schema_sync,
)

OBJECT_INFO = {
    "LoraLoader": {
        "input": {
            "required": {
                "model": ["MODEL"],
                "clip": ["CLIP"],
                "lora_name": [["ink.safetensors", "detail.safetensors"], {}],
                "strength_model": ["FLOAT", {"default": 1.0}],
                "strength_clip": ["FLOAT", {"default": 1.0}],
            }
        }
    },
    "easy loraStack": {
        "input": {
            "required": {"toggle": ["BOOLEAN"], "num_loras": ["INT"]},
            "optional": {
                f"lora_{i}_name": ["COMBO", {"options": ["None", "ink.safetensors", "x.pt"]}]
                for i in range(1, 5)
            },
        }
    },
    "CR Apply LoRA Stack": {
        "input": {"required": {"model": ["MODEL"], "clip": ["CLIP"], "lora_stack": ["LORA_STACK"]}}
    },
    "KSampler": {"input": {"required": {"model": ["MODEL"]}}},
}


def _client(handler) -> AsyncHttpClient:
    return AsyncHttpClient(
        base_url="http://executor.test", circuit_name=None, transport=httpx.MockTransport(handler)
    )


class TestComboOptions:
    def test_list_form(self):
        assert combo_options([["a", "b"], {}]) == ["a", "b"]

    def test_combo_form(self):
        assert combo_options(["COMBO", {"options": ["a"]}]) == ["a"]

    def test_mapping_form(self):
        assert combo_options({"options": {"a": 1, "b": 2}}) == ["a", "b"]

    def test_unknown_form(self):
        assert combo_options(["FLOAT", {"default": 1.0}]) == []
        assert combo_options(None) == []


class TestSchemaInfo:
    def test_parses_types_and_capacity(self):
        schema = SchemaInfo.from_object_info(OBJECT_INFO)
        assert schema.supports("LoraLoader")
        assert schema.capacity_of("easy loraStack") == 4
        assert schema.node_inputs["LoraLoader"].required[0] == "model"

    def test_adapter_files_deduplicated_without_none(self):
        schema = SchemaInfo.from_object_info(OBJECT_INFO)
        assert schema.adapter_files == ("ink.safetensors", "detail.safetensors", "x.pt")

    def test_choose_stack_needs_both_types(self):
        assert SchemaInfo.from_object_info(OBJECT_INFO).choose_stack().capacity == 4
        only_stack = SchemaInfo.from_types({"easy loraStack"})
        assert only_stack.choose_stack() is None

    def test_capacity_falls_back_to_default(self):
        schema = SchemaInfo.from_types({"easy loraStack", "CR Apply LoRA Stack"})
        assert schema.choose_stack().capacity == 10

    def test_choose_chain_order(self):
        both = SchemaInfo.from_types({"FluxLoraLoader", "LoraLoader"})
        assert both.choose_chain() == "LoraLoader"
        assert SchemaInfo.from_types({"FluxLoraLoader"}).choose_chain() == "FluxLoraLoader"
        assert SchemaInfo.empty().choose_chain() is None

    def test_bad_payload_is_empty(self):
        assert SchemaInfo.from_object_info(["nope"]).is_empty


class TestAsyncDiscovery:
    @pytest.mark.asyncio
    async def test_success(self):
        def handler(request):
            assert request.url.path == "/object_info"
            return httpx.Response(200, json=OBJECT_INFO)

        schema = await discover_schema(_client(handler))
        assert schema.choose_stack() is not None

    @pytest.mark.asyncio
    async def test_server_error_fails_closed(self):
        schema = await discover_schema(_client(lambda request: httpx.Response(500)))
        assert schema.is_empty

    @pytest.mark.asyncio
    async def test_invalid_json_fails_closed(self):
        schema = await discover_schema(
            _client(lambda request: httpx.Response(200, content=b"<html>"))
        )
        assert schema.is_empty

    @pytest.mark.asyncio
    async def test_connection_error_fails_closed(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        schema = await discover_schema(_client(handler))
        assert schema.is_empty

    @pytest.mark.asyncio
    async def test_timeout_fails_closed(self):
        async def handler(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json=OBJECT_INFO)

        schema = await discover_schema(_client(handler), timeout=0.05)
        assert schema.is_empty

    @pytest.mark.asyncio
    async def test_single_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        await discover_schema(_client(handler))
        assert len(calls) == 1


class TestSyncDiscovery:
    def test_uses_client(self):
        client = MagicMock()
        client.get_object_info.return_value = OBJECT_INFO
        assert discover_schema_sync(client).supports("KSampler")

    def test_failure_is_empty(self):
        client = MagicMock()
        client.get_object_info.side_effect = ExecutorConnectionError("down")
        assert discover_schema_sync(client).is_empty
