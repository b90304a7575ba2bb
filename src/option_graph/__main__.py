"""Entry point for `python -m option_graph` and the `option-graph` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

from option_graph.lifecycle import NotADraftError, PublishBlockedError, TreeVersionController, TreeVersionNotFoundError
from option_graph.settings import RuntimeSettings
from option_graph.state_store import FileTreeVersionStore
from option_graph.validator import validate
from option_graph.view_model import project_tree

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NEEDS_CONFIRMATION = 2


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Validate, project and publish product option trees")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--store-root",
        type=Path,
        default=None,
        help="Filesystem store directory (default: OPTION_GRAPH_STORE_ROOT)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    validate_cmd = commands.add_parser("validate", help="Validate a tree JSON file")
    validate_cmd.add_argument("file", type=Path)

    project_cmd = commands.add_parser("project", help="Print the editor view model of a tree JSON file")
    project_cmd.add_argument("file", type=Path)

    draft_cmd = commands.add_parser("draft", help="Create or fetch the draft for a product")
    draft_cmd.add_argument("product_id")

    show_cmd = commands.add_parser("show", help="Show the draft and active trees for a product")
    show_cmd.add_argument("product_id")

    patch_cmd = commands.add_parser("patch", help="Replace a draft's document with a tree JSON file")
    patch_cmd.add_argument("draft_id")
    patch_cmd.add_argument("file", type=Path)

    publish_cmd = commands.add_parser("publish", help="Validate and publish a draft")
    publish_cmd.add_argument("draft_id")
    publish_cmd.add_argument("--confirm-warnings", action="store_true", help="Publish even if warnings are reported")

    history_cmd = commands.add_parser("history", help="List every stored version of a product")
    history_cmd.add_argument("product_id")

    return parser.parse_args(argv)


def load_tree_file(path: Path) -> Any:
    if not path.is_file():
        raise FileNotFoundError(f"Tree file does not exist: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def _emit(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")


def _run(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    if args.command == "validate":
        report = validate(load_tree_file(args.file), ambiguous_edges_strict=settings.ambiguous_edges_strict)
        _emit({"success": report.ok, **report.to_wire()})
        return EXIT_OK if report.ok else EXIT_FAILED

    if args.command == "project":
        _emit({"success": True, "data": project_tree(load_tree_file(args.file)).to_wire()})
        return EXIT_OK

    store_root = args.store_root if args.store_root is not None else settings.store_path()
    controller = TreeVersionController(FileTreeVersionStore(store_root), settings=settings)

    if args.command == "draft":
        draft = controller.create_draft(args.product_id)
        _emit({"success": True, "data": {"draft": draft.to_wire()}})
    elif args.command == "show":
        _emit(controller.get_trees(args.product_id).to_payload())
    elif args.command == "patch":
        version = controller.patch_draft(args.draft_id, load_tree_file(args.file))
        _emit({"success": True, "data": version.to_wire()})
    elif args.command == "publish":
        try:
            outcome = controller.publish(args.draft_id, confirm_warnings=args.confirm_warnings)
        except PublishBlockedError as exc:
            _emit(exc.to_payload())
            return EXIT_FAILED
        _emit(outcome.to_payload())
        return EXIT_NEEDS_CONFIRMATION if outcome.requires_warnings_confirm else EXIT_OK
    elif args.command == "history":
        versions = controller.list_versions(args.product_id)
        _emit({"success": True, "data": [version.to_wire() for version in versions]})
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return EXIT_FAILED

    try:
        return _run(args, settings)
    except (TreeVersionNotFoundError, NotADraftError) as exc:
        _emit({"success": False, "message": str(exc)})
        return EXIT_FAILED
    except json.JSONDecodeError as exc:
        logging.error("Command %s failed: %s is not valid JSON: %s", args.command, args.file, exc)
        _emit({"success": False, "message": f"invalid JSON in {args.file}: {exc}"})
        return EXIT_FAILED
    except (OSError, ValueError) as exc:
        logging.error("Command %s failed: %s", args.command, exc)
        _emit({"success": False, "message": str(exc)})
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
