"""
Comfy Splice - Workflow Registry
================================

Declarative description of where each human-facing parameter lives inside a
template graph, plus the library of built-in templates.

A ``ParameterSpec`` names the node types a parameter targets, a primary
path, an optional fallback path, and an optional selector that tells apart
nodes of the same type (the positive and negative text encoders). Supporting
a new template means registering its graph here, nothing else.

Everything in this module is read-only after import and safe to share
between concurrent compiles.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any

from .exceptions import TemplateNotFoundError
from .graph import Graph, Node
from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    # Enums
    "ParameterType",
    "WorkflowCategory",
    # Specs
    "Selector",
    "ParameterSpec",
    "DEFAULT_PARAMETERS",
    "is_negative_prompt",
    "is_positive_prompt",
    "has_widget_values",
    # Templates
    "WorkflowTemplate",
    "TemplateLibrary",
    "get_library",
    "create_txt2img_template",
    "create_flux_template",
    "create_img2img_template",
]


# =============================================================================
# ENUMS
# =============================================================================


class ParameterType(str, Enum):
    STRING = "string"
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"
    MODEL = "model"
    IMAGE = "image"


class WorkflowCategory(str, Enum):
    TEXT_TO_IMAGE = "text-to-image"
    IMG_TO_IMG = "img-to-img"


# =============================================================================
# SELECTORS
# =============================================================================

Selector = Callable[[Node, Graph], bool]


def is_negative_prompt(node: Node, graph: Graph) -> bool:
    """
    True for text encoders carrying a "negative" marker.

    The marker is a ``negative`` input on the node itself, "negative" in its
    title, or a consumer that reads it through an input named ``negative``.
    """
    if node.inputs.get("negative"):
        return True
    if "negative" in node.title.lower():
        return True
    return any(name == "negative" for _, name in graph.consumers_of(node.node_id))


def is_positive_prompt(node: Node, graph: Graph) -> bool:
    return not is_negative_prompt(node, graph)


def has_widget_values(node: Node, graph: Graph) -> bool:
    """True for nodes still carrying editor widget values (the fallback paths)."""
    values = node.body.get("widgets_values")
    return isinstance(values, list) and len(values) > 0


# =============================================================================
# PARAMETER SPECS
# =============================================================================


@dataclass(frozen=True)
class ParameterSpec:
    """Where one parameter is written inside a template graph."""

    name: str
    value_type: ParameterType
    target_types: tuple[str, ...]
    primary_path: str
    fallback_path: str | None = None
    selector: Selector | None = None
    description: str = ""

    def matches(self, node: Node, graph: Graph) -> bool:
        if node.class_type not in self.target_types:
            return False
        return self.selector is None or self.selector(node, graph)


_TEXT_ENCODERS = ("CLIPTextEncode",)
_SAMPLERS = ("KSampler", "KSamplerAdvanced")
_LATENTS = ("EmptyLatentImage", "EmptySD3LatentImage")

# KSampler widget order: seed, control_after_generate, steps, cfg, sampler, scheduler, denoise
_SPECS = (
    ParameterSpec(
        "prompt", ParameterType.STRING, _TEXT_ENCODERS, "inputs.text", "widgets_values[0]",
        selector=is_positive_prompt, description="Text prompt for generation",
    ),
    ParameterSpec(
        "negative_prompt", ParameterType.STRING, _TEXT_ENCODERS, "inputs.text",
        "widgets_values[0]", selector=is_negative_prompt,
        description="What to keep out of the image",
    ),
    ParameterSpec(
        "seed", ParameterType.INT, _SAMPLERS, "inputs.seed", "widgets_values[0]",
        description="Random seed (-1 picks one)",
    ),
    ParameterSpec(
        "steps", ParameterType.INT, _SAMPLERS, "inputs.steps", "widgets_values[2]",
        description="Number of sampling steps",
    ),
    ParameterSpec(
        "cfg_scale", ParameterType.FLOAT, _SAMPLERS, "inputs.cfg", "widgets_values[3]",
        description="Classifier-free guidance scale",
    ),
    ParameterSpec(
        "sampler_name", ParameterType.STRING, _SAMPLERS, "inputs.sampler_name",
        "widgets_values[4]",
    ),
    ParameterSpec(
        "scheduler", ParameterType.STRING, _SAMPLERS, "inputs.scheduler", "widgets_values[5]",
    ),
    ParameterSpec(
        "denoise", ParameterType.FLOAT, _SAMPLERS, "inputs.denoise", "widgets_values[6]",
        description="Denoise strength (img2img)",
    ),
    ParameterSpec(
        "width", ParameterType.INT, _LATENTS, "inputs.width", "widgets_values[0]",
    ),
    ParameterSpec(
        "height", ParameterType.INT, _LATENTS, "inputs.height", "widgets_values[1]",
    ),
    ParameterSpec(
        "filename_prefix", ParameterType.STRING, ("SaveImage",), "inputs.filename_prefix",
        "widgets_values[0]", description="Prefix for saved files",
    ),
    ParameterSpec(
        "guidance_scale", ParameterType.FLOAT, ("FluxGuidance",), "inputs.guidance",
        "widgets_values[0]", description="Flux guidance",
    ),
    ParameterSpec(
        "image", ParameterType.IMAGE, ("LoadImage",), "inputs.image", "widgets_values[0]",
        description="Input image reference",
    ),
    ParameterSpec(
        "checkpoint", ParameterType.MODEL, ("CheckpointLoaderSimple",), "inputs.ckpt_name",
        "widgets_values[0]",
    ),
    ParameterSpec(
        "unet", ParameterType.MODEL, ("UNETLoader",), "inputs.unet_name", "widgets_values[0]",
    ),
)

DEFAULT_PARAMETERS: Mapping[str, ParameterSpec] = MappingProxyType(
    {spec.name: spec for spec in _SPECS}
)


# =============================================================================
# TEMPLATES
# =============================================================================


@dataclass(frozen=True)
class WorkflowTemplate:
    """A template graph in API format plus its parameter table and defaults."""

    id: str
    name: str
    description: str
    category: WorkflowCategory
    workflow: Mapping[str, Any]
    parameters: Mapping[str, ParameterSpec] = field(default_factory=lambda: DEFAULT_PARAMETERS)
    defaults: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    tags: tuple[str, ...] = ()

    def graph(self) -> Graph:
        """A fresh, independently mutable graph of this template."""
        return Graph.from_api(self.workflow, source=self.id)


def create_txt2img_template() -> WorkflowTemplate:
    """Checkpoint-based text-to-image."""
    workflow = {
        "3": {
            "class_type": "KSampler",
            "inputs": {
                "cfg": 7.0,
                "denoise": 1.0,
                "latent_image": ["5", 0],
                "model": ["4", 0],
                "negative": ["7", 0],
                "positive": ["6", 0],
                "sampler_name": "euler_ancestral",
                "scheduler": "normal",
                "seed": 0,
                "steps": 25,
            },
        },
        "4": {
            "class_type": "CheckpointLoaderSimple",
            "inputs": {"ckpt_name": "dreamshaper_8.safetensors"},
        },
        "5": {
            "class_type": "EmptyLatentImage",
            "inputs": {"batch_size": 1, "height": 1024, "width": 1024},
        },
        "6": {"class_type": "CLIPTextEncode", "inputs": {"clip": ["4", 1], "text": ""}},
        "7": {
            "class_type": "CLIPTextEncode",
            "inputs": {"clip": ["4", 1], "text": "ugly, blurry, low quality"},
        },
        "8": {"class_type": "VAEDecode", "inputs": {"samples": ["3", 0], "vae": ["4", 2]}},
        "9": {
            "class_type": "SaveImage",
            "inputs": {"filename_prefix": "comfy_splice", "images": ["8", 0]},
        },
    }
    return WorkflowTemplate(
        id="txt2img_standard",
        name="Text to Image",
        description="Standard checkpoint text-to-image workflow",
        category=WorkflowCategory.TEXT_TO_IMAGE,
        workflow=MappingProxyType(workflow),
        defaults=MappingProxyType({"steps": 25, "cfg_scale": 7.0}),
        tags=("txt2img", "standard"),
    )


def create_flux_template() -> WorkflowTemplate:
    """Flux text-to-image with separate UNET, dual CLIP and VAE loaders."""
    workflow = {
        "1": {
            "class_type": "UNETLoader",
            "inputs": {"unet_name": "flux1-dev.safetensors", "weight_dtype": "fp8_e4m3fn"},
        },
        "2": {
            "class_type": "DualCLIPLoader",
            "inputs": {
                "clip_name1": "t5xxl_fp16.safetensors",
                "clip_name2": "clip_l.safetensors",
                "type": "flux",
            },
        },
        "3": {"class_type": "VAELoader", "inputs": {"vae_name": "ae.safetensors"}},
        "4": {
            "class_type": "EmptyLatentImage",
            "inputs": {"width": 1024, "height": 1024, "batch_size": 1},
        },
        "5": {
            "class_type": "CLIPTextEncode",
            "inputs": {"text": "", "clip": ["2", 0]},
            "_meta": {"title": "Positive Prompt"},
        },
        "6": {
            "class_type": "CLIPTextEncode",
            "inputs": {"text": "low quality, bad anatomy, blurry, pixelated", "clip": ["2", 0]},
            "_meta": {"title": "Negative Prompt"},
        },
        "7": {
            "class_type": "KSampler",
            "inputs": {
                "seed": 0,
                "steps": 28,
                "cfg": 1.0,
                "sampler_name": "euler",
                "scheduler": "simple",
                "denoise": 1.0,
                "model": ["1", 0],
                "positive": ["10", 0],
                "negative": ["6", 0],
                "latent_image": ["4", 0],
            },
        },
        "8": {"class_type": "VAEDecode", "inputs": {"samples": ["7", 0], "vae": ["3", 0]}},
        "9": {
            "class_type": "SaveImage",
            "inputs": {"filename_prefix": "flux", "images": ["8", 0]},
        },
        "10": {
            "class_type": "FluxGuidance",
            "inputs": {"guidance": 3.5, "conditioning": ["5", 0]},
        },
    }
    return WorkflowTemplate(
        id="txt2img_flux",
        name="Flux Text to Image",
        description="Flux dev text-to-image with guidance",
        category=WorkflowCategory.TEXT_TO_IMAGE,
        workflow=MappingProxyType(workflow),
        defaults=MappingProxyType({"steps": 28, "guidance_scale": 3.5}),
        tags=("txt2img", "flux"),
    )


def create_img2img_template() -> WorkflowTemplate:
    """Checkpoint image-to-image driven by a LoadImage node."""
    workflow = {
        "1": {
            "class_type": "CheckpointLoaderSimple",
            "inputs": {"ckpt_name": "dreamshaper_8.safetensors"},
        },
        "2": {"class_type": "LoadImage", "inputs": {"image": "input.png"}},
        "3": {"class_type": "VAEEncode", "inputs": {"pixels": ["2", 0], "vae": ["1", 2]}},
        "4": {"class_type": "CLIPTextEncode", "inputs": {"clip": ["1", 1], "text": ""}},
        "5": {
            "class_type": "CLIPTextEncode",
            "inputs": {"clip": ["1", 1], "text": "ugly, blurry, low quality"},
        },
        "6": {
            "class_type": "KSampler",
            "inputs": {
                "cfg": 7.0,
                "denoise": 0.75,
                "latent_image": ["3", 0],
                "model": ["1", 0],
                "negative": ["5", 0],
                "positive": ["4", 0],
                "sampler_name": "euler_ancestral",
                "scheduler": "normal",
                "seed": 0,
                "steps": 25,
            },
        },
        "7": {"class_type": "VAEDecode", "inputs": {"samples": ["6", 0], "vae": ["1", 2]}},
        "8": {
            "class_type": "SaveImage",
            "inputs": {"filename_prefix": "img2img", "images": ["7", 0]},
        },
    }
    return WorkflowTemplate(
        id="img2img_standard",
        name="Image to Image",
        description="Re-render an input image guided by a prompt",
        category=WorkflowCategory.IMG_TO_IMG,
        workflow=MappingProxyType(workflow),
        defaults=MappingProxyType({"denoise": 0.75}),
        tags=("img2img",),
    )


# =============================================================================
# TEMPLATE LIBRARY
# =============================================================================


class TemplateLibrary:
    """
    Available workflow templates.

    Built-ins are registered on construction; JSON exports from the ComfyUI
    editor (either format) can be added with ``load_file``.
    """

    def __init__(self):
        self._templates: dict[str, WorkflowTemplate] = {}
        self._load_builtin()

    def _load_builtin(self):
        for template in (
            create_txt2img_template(),
            create_flux_template(),
            create_img2img_template(),
        ):
            self._templates[template.id] = template

    def get(self, template_id: str) -> WorkflowTemplate:
        """
        Get a template by ID.

        Raises:
            TemplateNotFoundError: If no template has that ID
        """
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(
                template_id, details={"available": sorted(self._templates)}
            )
        return template

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates

    def list_all(self, category: WorkflowCategory | None = None) -> list[WorkflowTemplate]:
        templates = list(self._templates.values())
        if category:
            templates = [t for t in templates if t.category == category]
        return sorted(templates, key=lambda t: t.name)

    def add(self, template: WorkflowTemplate):
        """Add a custom template."""
        self._templates[template.id] = template

    def load_file(
        self,
        path: str | Path,
        template_id: str | None = None,
        category: WorkflowCategory = WorkflowCategory.TEXT_TO_IMAGE,
        description: str = "",
    ) -> WorkflowTemplate:
        """
        Register a workflow JSON file as a template.

        Raises:
            TemplateParseError: If the file is not a usable workflow
        """
        path = Path(path)
        graph = Graph.load(path)
        template = WorkflowTemplate(
            id=template_id or path.stem,
            name=path.stem.replace("_", " ").replace("-", " ").title(),
            description=description or f"Imported from {path.name}",
            category=category,
            workflow=MappingProxyType(graph.to_api()),
            tags=("imported",),
        )
        self.add(template)
        logger.info(
            f"Registered template {template.id}",
            extra={"template_id": template.id, "nodes": len(graph)},
        )
        return template

    def resolve(self, ref: str) -> WorkflowTemplate:
        """A template ID, or the path of a workflow JSON file."""
        if ref in self._templates:
            return self._templates[ref]
        path = Path(ref)
        if path.suffix == ".json" and path.exists():
            return self.load_file(path)
        return self.get(ref)


_library: TemplateLibrary | None = None


def get_library() -> TemplateLibrary:
    """Get the process-wide template library."""
    global _library
    if _library is None:
        _library = TemplateLibrary()
    return _library
