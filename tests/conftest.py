"""Shared fixtures for comfy_splice tests."""

import pytest

from comfy_splice.graph import Graph
from comfy_splice.retry import circuit_registry
from comfy_splice.schema import SchemaInfo


@pytest.fixture(autouse=True)
def reset_circuits():
    """Circuit breakers are process-wide; start every test closed."""
    circuit_registry.reset_all()
    yield
    circuit_registry.reset_all()


@pytest.fixture
def split_graph() -> Graph:
    """Separate model and CLIP loaders: 1 model, 2 clip, 3 encode, 4 sample."""
    return Graph.from_api(
        {
            "1": {"class_type": "UNETLoader", "inputs": {"unet_name": "flux1-dev.safetensors"}},
            "2": {"class_type": "DualCLIPLoader", "inputs": {"type": "flux"}},
            "3": {"class_type": "CLIPTextEncode", "inputs": {"text": "", "clip": ["2", 0]}},
            "4": {
                "class_type": "KSampler",
                "inputs": {"model": ["1", 0], "positive": ["3", 0], "steps": 20, "seed": 0},
            },
        }
    )


@pytest.fixture
def checkpoint_graph() -> Graph:
    """Single checkpoint loader feeding MODEL, CLIP and VAE."""
    return Graph.from_api(
        {
            "3": {
                "class_type": "KSampler",
                "inputs": {
                    "model": ["4", 0],
                    "positive": ["6", 0],
                    "negative": ["7", 0],
                    "latent_image": ["5", 0],
                    "steps": 25,
                    "seed": 1,
                    "cfg": 7.0,
                },
            },
            "4": {"class_type": "CheckpointLoaderSimple", "inputs": {"ckpt_name": "sd15.ckpt"}},
            "5": {"class_type": "EmptyLatentImage", "inputs": {"width": 512, "height": 512}},
            "6": {"class_type": "CLIPTextEncode", "inputs": {"text": "a cat", "clip": ["4", 1]}},
            "7": {"class_type": "CLIPTextEncode", "inputs": {"text": "blurry", "clip": ["4", 1]}},
            "8": {"class_type": "VAEDecode", "inputs": {"samples": ["3", 0], "vae": ["4", 2]}},
            "9": {
                "class_type": "SaveImage",
                "inputs": {"images": ["8", 0], "filename_prefix": "out"},
            },
        }
    )


@pytest.fixture
def stack_schema() -> SchemaInfo:
    return SchemaInfo.from_types(
        {"easy loraStack", "CR Apply LoRA Stack", "LoraLoader"},
        stack_capacity={"easy loraStack": 3},
    )


@pytest.fixture
def chain_schema() -> SchemaInfo:
    return SchemaInfo.from_types({"LoraLoader"})
