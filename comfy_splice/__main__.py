"""
Comfy Splice - CLI Entry Point
Run with: python -m comfy_splice
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path


def _parse_param(text: str) -> tuple[str, object]:
    name, sep, raw = text.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {text!r}")
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = raw
    return name.strip(), value


def _parse_adapter(text: str):
    from .adapters import AdapterSpec

    parts = text.rsplit(":", 2)
    weights = []
    while len(parts) > 1:
        try:
            weights.insert(0, float(parts[-1]))
        except ValueError:
            break
        parts.pop()
    path = ":".join(parts)
    model_weight = weights[0] if weights else 1.0
    clip_weight = weights[1] if len(weights) > 1 else 1.0
    return AdapterSpec(path, model_weight=model_weight, conditioning_weight=clip_weight)


def _parse_image(text: str) -> tuple[str, object]:
    node_id, sep, source = text.partition("=")
    if not sep or not node_id or not source:
        raise argparse.ArgumentTypeError(f"expected NODE_ID=FILE_OR_URL, got {text!r}")
    if source.startswith(("http://", "https://", "data:")):
        return node_id.strip(), source
    return node_id.strip(), Path(source)


def _load_schema(args):
    from .schema import SchemaInfo, discover_schema

    if args.object_info:
        try:
            data = json.loads(Path(args.object_info).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            print(f"Error: cannot read {args.object_info}: {e}", file=sys.stderr)
            return SchemaInfo.empty()
        return SchemaInfo.from_object_info(data)
    if args.discover:
        from .http_client import AsyncHttpClient

        async def discover():
            async with AsyncHttpClient(base_url=args.url) as client:
                return await discover_schema(client)

        return asyncio.run(discover())
    return SchemaInfo.empty()


def _cmd_compile(args) -> int:
    from .compiler import get_compiler
    from .exceptions import ComfySpliceError, format_error_for_user
    from .splicer import SpliceStrategy

    schema = _load_schema(args)
    strategy = SpliceStrategy(args.strategy) if args.strategy else None
    try:
        compiled = get_compiler().compile(
            args.template,
            dict(args.param),
            adapters=args.adapter,
            schema=schema,
            strategy=strategy,
            images=dict(args.image),
        )
    except ComfySpliceError as e:
        print(f"Error: {format_error_for_user(e)}", file=sys.stderr)
        return 1

    output = json.dumps(compiled.workflow, indent=2)
    if args.output:
        Path(args.output).write_text(output + "\n", encoding="utf-8")
    else:
        print(output)

    for warning in compiled.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    print(
        f"compiled {compiled.template_id} ({len(compiled.graph)} nodes, "
        f"hash {compiled.workflow_hash})",
        file=sys.stderr,
    )
    return 0


def _cmd_schema(args) -> int:
    schema = _load_schema(args)
    if schema.is_empty:
        print("No schema available; adapters would be skipped.")
        return 1

    print(f"Node types: {len(schema.operation_types)}")
    stack = schema.choose_stack()
    if stack:
        print(
            f"Stacked adapters: {stack.stack_type} + {stack.apply_type} "
            f"({stack.capacity} slots)"
        )
    else:
        print("Stacked adapters: unavailable")
    print(f"Chained adapters: {schema.choose_chain() or 'unavailable'}")
    print(f"Adapter files ({len(schema.adapter_files)}):")
    for name in schema.adapter_files:
        print(f"  {name}")
    return 0


def _cmd_templates(args) -> int:
    from .registry import get_library

    for template in get_library().list_all():
        print(f"{template.id:<20} {template.category.value:<14} {template.description}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    from .config import settings

    parser = argparse.ArgumentParser(
        prog="comfy-splice", description="Comfy Splice - ComfyUI workflow compiler"
    )
    parser.add_argument("--version", "-v", action="store_true", help="Show version and exit")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Override COMFY_SPLICE_LOGGING__LEVEL for this run",
    )
    parser.add_argument(
        "--verbosity",
        choices=["eli5", "casual", "developer"],
        help="How much detail error messages carry",
    )
    sub = parser.add_subparsers(dest="command")

    schema_source = argparse.ArgumentParser(add_help=False)
    source = schema_source.add_mutually_exclusive_group()
    source.add_argument("--object-info", help="Read the schema from a saved /object_info JSON")
    source.add_argument("--discover", action="store_true", help="Ask the executor for its schema")
    schema_source.add_argument(
        "--url",
        default=settings.executor.url,
        help=f"ComfyUI server URL (default: {settings.executor.url})",
    )

    compile_cmd = sub.add_parser(
        "compile", parents=[schema_source], help="Compile a template into API JSON"
    )
    compile_cmd.add_argument("template", help="Template id or workflow JSON file")
    compile_cmd.add_argument(
        "--param", "-p", action="append", type=_parse_param, default=[], help="NAME=VALUE"
    )
    compile_cmd.add_argument(
        "--adapter",
        "-a",
        action="append",
        type=_parse_adapter,
        default=[],
        help="PATH[:MODEL_WEIGHT[:CLIP_WEIGHT]]",
    )
    compile_cmd.add_argument(
        "--image",
        "-i",
        action="append",
        type=_parse_image,
        default=[],
        help="NODE_ID=FILE_OR_URL, embedded inline as LoadImageFromBase64",
    )
    compile_cmd.add_argument("--strategy", choices=["stacked", "chained"])
    compile_cmd.add_argument("--output", "-o", help="Write JSON here instead of stdout")
    compile_cmd.set_defaults(func=_cmd_compile)

    schema_cmd = sub.add_parser(
        "schema", parents=[schema_source], help="Show executor adapter support"
    )
    schema_cmd.set_defaults(func=_cmd_schema)

    templates_cmd = sub.add_parser("templates", help="List built-in templates")
    templates_cmd.set_defaults(func=_cmd_templates)
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        from .logging_config import set_log_level

        set_log_level(args.log_level)
    if args.verbosity:
        from .exceptions import VerbosityLevel, set_verbosity

        set_verbosity(VerbosityLevel(args.verbosity))

    if args.version:
        from . import __version__

        print(f"comfy-splice v{__version__}")
        return 0

    if not args.command:
        parser.print_help()
        return 2

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
