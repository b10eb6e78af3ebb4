import argparse
import sys
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_models(models: List[dict], active_id: Optional[int] = None) -> None:
    if not models:
        print("The catalog is empty.")
        return
    for model in models:
        marker = "*" if model.get("id") == active_id else " "
        status = "available" if model.get("isAvailable") else "unavailable"
        missing = model.get("markedAsMissingSince")
        suffix = f" (missing since {missing})" if missing else ""
        print(f"{marker} {model.get('id'):>4} {model.get('provider'):<10} {model.get('name')} [{status}]{suffix}")


def run_models_list(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(
            _join_url(base, "/api/models"),
            params={"available_only": str(bool(args.available)).lower()},
            timeout=10,
        )
        if resp.status_code >= 400:
            print(f"Failed to list models: HTTP {resp.status_code}")
            return 1
        active = client.get(_join_url(base, "/api/models/active"), timeout=10)
        active_id = active.json().get("model", {}).get("id") if active.status_code == 200 else None
        _print_models(resp.json().get("models") or [], active_id)
    return 0


def run_models_sync(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/models/sync"), timeout=args.timeout)
        if resp.status_code >= 400:
            print(f"Failed to sync models: HTTP {resp.status_code}")
            return 1
        for report in resp.json().get("reports") or []:
            if report.get("skipped"):
                reason = report.get("error") or "no models returned"
                print(f"{report['provider']}: skipped ({reason})")
                continue
            print(
                f"{report['provider']}: seen {report['seen']}, added {report['added']}, "
                f"updated {report['updated']}, reactivated {report['reactivated']}, "
                f"missing {report['marked_missing']}, deactivated {report['deactivated']}"
            )
            for change in report.get("changes") or []:
                print(f"  - {change}")
    return 0


def run_models_activate(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload: dict = {"modelId": args.model_id}
    config = {}
    if args.temperature is not None:
        config["temperature"] = args.temperature
    if args.max_output_tokens is not None:
        config["maxOutputTokens"] = args.max_output_tokens
    if config:
        payload["config"] = config
    with httpx.Client() as client:
        resp = client.put(_join_url(base, "/api/models/active"), json=payload, timeout=10)
        if resp.status_code == 404:
            print(f"Model {args.model_id} not found.")
            return 1
        if resp.status_code == 409:
            print(f"Model {args.model_id} is not available.")
            return 1
        if resp.status_code >= 400:
            print(f"Failed to set active model: HTTP {resp.status_code}")
            return 1
        data = resp.json()
        model = data.get("model") or {}
        print(f"Active model: {model.get('provider')}/{model.get('name')} config={data.get('config')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LLM chat gateway CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    models = subparsers.add_parser("models", help="Model catalog management")
    models_sub = models.add_subparsers(dest="models_cmd")

    listing = models_sub.add_parser("list", help="List catalog models")
    listing.add_argument("--available", action="store_true", help="Only available models")

    sync = models_sub.add_parser("sync", help="Synchronize the catalog with the providers")
    sync.add_argument("--timeout", type=int, default=120, help="Max wait seconds")

    activate = models_sub.add_parser("activate", help="Set the active model")
    activate.add_argument("model_id", type=int, help="Catalog model id")
    activate.add_argument("--temperature", type=float, default=None)
    activate.add_argument("--max-output-tokens", type=int, default=None)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "models" and args.models_cmd == "list":
        return run_models_list(args)
    if args.command == "models" and args.models_cmd == "sync":
        return run_models_sync(args)
    if args.command == "models" and args.models_cmd == "activate":
        return run_models_activate(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
