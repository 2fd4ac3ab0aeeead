#!/usr/bin/env python3
"""
Command-line interface for the vibe prototype generation pipeline.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from vibe_gen.config import Settings
from vibe_gen.editing.element_summary import extract_element_summary
from vibe_gen.editing.operations import apply_operations, parse_operations
from vibe_gen.extraction.components import ComponentExtractor
from vibe_gen.gateway import ProviderGateway
from vibe_gen.io.stores import EnvSecretsVault, LocalArtifactStore
from vibe_gen.models import GenerationStrategy, PipelineView, ProviderKind, SessionStatus, SourceScreen
from vibe_gen.pipeline.controller import PipelineController
from vibe_gen.rendering.capture import PlaywrightScreenCapturer

# Load environment variables
load_dotenv()


def _settings(args) -> Settings:
    settings = Settings.from_env()
    updates = {}
    if getattr(args, "provider", None):
        updates["provider"] = ProviderKind(args.provider)
    if getattr(args, "model", None):
        updates["model"] = args.model
    if getattr(args, "strategy", None):
        updates["strategy"] = GenerationStrategy(args.strategy)
    if getattr(args, "output_dir", None):
        updates["output_dir"] = Path(args.output_dir)
    return settings.model_copy(update=updates)


def _print_error(view: PipelineView) -> bool:
    if view.error is None:
        return False
    print(f"❌ {view.error.kind}: {view.error.message}")
    if view.error.retryable_with_other_provider:
        print("   💡 Another provider may succeed (use --provider)")
    return True


def _ask(question: str, interactive: bool) -> str:
    if not interactive:
        return ""
    return input(f"❓ {question} ").strip()


async def _run_pipeline(args) -> int:
    settings = _settings(args)
    source_path = Path(args.source)
    if not source_path.exists():
        print(f"❌ Error: Source HTML not found: {source_path}")
        return 1

    screen = SourceScreen(name=source_path.stem, html=source_path.read_text(encoding="utf-8"))
    product_context = Path(args.product_context).read_text(encoding="utf-8") if args.product_context else None
    ux_guidelines = Path(args.ux_guidelines).read_text(encoding="utf-8") if args.ux_guidelines else None
    store = LocalArtifactStore(settings.output_dir)
    gateway = ProviderGateway(EnvSecretsVault(), settings=settings)
    controller = PipelineController(gateway, store, capturer=PlaywrightScreenCapturer(), settings=settings)

    print(f"📄 Source: {source_path}")
    print(f"🤖 Using {gateway.resolve_provider().value}/{settings.model or 'default'}")
    print(f"💬 Request: {args.prompt}")

    try:
        view = await controller.start(
            args.prompt, screen, product_context=product_context, ux_guidelines=ux_guidelines,
        )
        if _print_error(view):
            return 1
        print(f"🧠 Understanding: {view.understanding.summary}")
        for question in view.understanding.clarifying_questions:
            answer = _ask(question, args.interactive)
            if answer:
                view = await controller.clarify(answer)
                if _print_error(view):
                    return 1
                print(f"🧠 Updated understanding: {view.understanding.summary}")

        view = await controller.approve_understanding()
        if _print_error(view):
            return 1
        print("\n📋 Proposed variants:")
        for plan in view.plan:
            print(f"   {plan.variant_index}. {plan.title}: {plan.description}")

        answer = _ask("Variants to build (e.g. 1,3) [all]:", args.interactive)
        selection = answer or args.select
        selected = [int(i) for i in selection.split(",")] if selection else [p.variant_index for p in view.plan]

        print(f"\n📐 Wireframing variants {selected}...")
        view = await controller.approve_plan(selected)
        if _print_error(view):
            return 1
        for index, error in view.variant_errors.items():
            print(f"   ⚠️  Wireframe {index} failed: {error.message}")

        print("🎨 Building high-fidelity variants...")
        view = await controller.build_high_fidelity()
        if _print_error(view):
            return 1

        print("\n" + "=" * 60)
        print(f"📊 Status: {view.status.value}")
        print("=" * 60)
        for variant in view.variants:
            if variant.variant_index not in view.selected_indices:
                continue
            if variant.html_url:
                print(f"✅ Variant {variant.variant_index}: {variant.html_url}")
            else:
                print(f"❌ Variant {variant.variant_index}: {variant.error_message or variant.status.value}")
        for warning in view.warnings:
            print(f"   ⚠️  {warning}")
        return 0 if view.status == SessionStatus.COMPLETE else 1
    finally:
        await controller.close()


def cmd_run(args):
    """Run the full pipeline on a source screen."""
    print("🚀 Generating prototype variants...")
    return asyncio.run(_run_pipeline(args))


def cmd_summary(args):
    """Print the element summary of an HTML document."""
    html_path = Path(args.html)
    if not html_path.exists():
        print(f"❌ Error: HTML file not found: {html_path}")
        return 1

    summary = extract_element_summary(html_path.read_text(encoding="utf-8"))
    if args.json:
        print(summary.model_dump_json(indent=2))
        return 0

    print(summary.to_prompt_text(args.max_tokens))
    print(f"\n📊 {summary.stats.total_elements} elements, depth {summary.stats.max_depth}, "
          f"{summary.stats.unique_selectors} selectors")
    return 0


def cmd_apply_edits(args):
    """Apply a JSON list of edit operations to an HTML document."""
    html_path = Path(args.html)
    ops_path = Path(args.operations)
    for path in (html_path, ops_path):
        if not path.exists():
            print(f"❌ Error: File not found: {path}")
            return 1

    html = html_path.read_text(encoding="utf-8")
    operations, warnings = parse_operations(json.loads(ops_path.read_text(encoding="utf-8")))
    result = apply_operations(html, operations, extract_element_summary(html))

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(result.html, encoding="utf-8")

    print(f"✅ Applied {len(result.applied)} operations, skipped {len(result.skipped)}")
    for warning in warnings + result.warnings:
        print(f"   ⚠️  {warning}")
    print(f"📄 Output: {output_path}")
    return 0


async def _extract(args) -> int:
    settings = _settings(args)
    screens = []
    for name in args.html:
        path = Path(name)
        if not path.exists():
            print(f"❌ Error: HTML file not found: {path}")
            return 1
        screens.append(SourceScreen(name=path.stem, html=path.read_text(encoding="utf-8")))

    gateway = ProviderGateway(EnvSecretsVault(), settings=settings)
    extractor = ComponentExtractor(gateway, capturer=PlaywrightScreenCapturer(), settings=settings)

    def on_progress(progress):
        print(f"   ⏳ {progress.finished}/{progress.total} screens, ~{progress.eta_ms / 1000:.0f}s remaining")

    def on_found(components, screen_name):
        print(f"   🧩 {screen_name}: {len(components)} components")

    result = await extractor.extract(screens, on_progress=on_progress, on_components_found=on_found)

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(
        json.dumps([c.model_dump(mode="json") for c in result.components], indent=2),
        encoding="utf-8",
    )
    print(f"✅ {len(result.components)} unique components")
    for screen_id, error in result.errors.items():
        print(f"   ❌ {screen_id}: {error}")
    print(f"📄 Output: {output_path}")
    return 0 if result.success else 1


def cmd_extract(args):
    """Extract reusable components from several screens."""
    print("🔍 Extracting components...")
    return asyncio.run(_extract(args))


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Generate UI prototype variants from an existing screen",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the full generation pipeline")
    run_parser.add_argument("--source", "-s", required=True, help="Path to source screen HTML")
    run_parser.add_argument("--prompt", "-p", required=True, help="Requested change")
    run_parser.add_argument("--product-context", help="Path to a text file describing the product")
    run_parser.add_argument("--ux-guidelines", help="Path to a text file of UX guidelines")
    run_parser.add_argument("--select", help="Comma separated variant indices (default: all)")
    run_parser.add_argument("--provider", choices=[k.value for k in ProviderKind])
    run_parser.add_argument("--model", help="Model name (default: provider default)")
    run_parser.add_argument("--strategy", choices=[s.value for s in GenerationStrategy])
    run_parser.add_argument("--output", "-o", dest="output_dir", help="Output directory")
    run_parser.add_argument("--interactive", "-i", action="store_true", help="Ask before each approval")

    summary_parser = subparsers.add_parser("summary", help="Print the element summary of an HTML file")
    summary_parser.add_argument("--html", required=True, help="Path to HTML file")
    summary_parser.add_argument("--max-tokens", type=int, default=2000, help="Token budget of the text form")
    summary_parser.add_argument("--json", action="store_true", help="Print the full summary as JSON")

    edits_parser = subparsers.add_parser("apply-edits", help="Apply edit operations to an HTML file")
    edits_parser.add_argument("--html", required=True, help="Path to HTML file")
    edits_parser.add_argument("--operations", required=True, help="Path to JSON operations")
    edits_parser.add_argument("--output", "-o", required=True, help="Output HTML path")

    extract_parser = subparsers.add_parser("extract", help="Extract reusable components")
    extract_parser.add_argument("html", nargs="+", help="Source screen HTML files")
    extract_parser.add_argument("--output", "-o", default="outputs/components.json", help="Output JSON path")
    extract_parser.add_argument("--provider", choices=[k.value for k in ProviderKind])
    extract_parser.add_argument("--model", help="Model name (default: provider default)")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == "run":
            return cmd_run(args)
        elif args.command == "summary":
            return cmd_summary(args)
        elif args.command == "apply-edits":
            return cmd_apply_edits(args)
        elif args.command == "extract":
            return cmd_extract(args)
    except KeyboardInterrupt:
        print("\n\n⚠️  Interrupted by user")
        return 130
    except Exception as e:
        print(f"\n❌ Error: {str(e)}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
