#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("CARE_NOTIFY_API_BASE_URL", "").strip() or "http://localhost:8000"
    prefix = os.getenv("CARE_NOTIFY_API_PREFIX", "/api/v1")
    if candidate.rstrip("/").endswith(prefix.rstrip("/")):
        return candidate.rstrip("/")
    return f"{candidate.rstrip('/')}{prefix}"


def _post_json(base_url: str, path: str, payload: dict[str, Any], *, timeout: int) -> dict[str, Any]:
    request = urllib.request.Request(
        f"{base_url}/{path.lstrip('/')}",
        data=json.dumps(payload).encode("utf-8"),
        headers={"Accept": "application/json", "Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"POST {path} failed with {exc.code}: {detail}") from exc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Trigger an on-demand care reminder sweep on a running service.")
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Service base URL. Accepts either host root (e.g. http://localhost:8000) "
            "or full API prefix (e.g. http://localhost:8000/api/v1)."
        ),
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Evaluate due reminders and targets without sending or advancing anything.",
    )
    parser.add_argument(
        "--now",
        default=None,
        help="ISO-8601 timestamp to evaluate against (dry runs, or when REMINDER_ALLOW_NOW_OVERRIDE=true).",
    )
    parser.add_argument("--timeout", type=int, default=60, help="HTTP timeout in seconds (default: 60).")
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    api_base_url = _resolve_api_base_url(args.api_base_url)
    payload: dict[str, Any] = {"dry_run": args.dry_run}
    if args.now:
        payload["now_override"] = args.now

    result = _post_json(api_base_url, "/notify/reminders", payload, timeout=args.timeout)
    print(json.dumps(result, indent=2))
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    raise SystemExit(main())
