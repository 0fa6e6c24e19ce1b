#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portal.config import settings
from portal.infra.portal_client import PortalClient, PortalClientError


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Validate portal settings and upstream connectivity")
    parser.add_argument("--token", default=None, help="Bearer token for the upstream API")
    parser.add_argument("--area-id", default=None, help="Area to list officers for")
    parser.add_argument("--complaint-id", default=None, help="Complaint to fetch as a smoke test")
    return parser.parse_args()


async def check_endpoint(name: str, call: Any) -> dict[str, Any]:
    try:
        result = await call
    except PortalClientError as exc:
        return {"check": name, "ok": False, "status": exc.status, "detail": str(exc)[:200]}
    size = len(result) if isinstance(result, (list, dict)) else None
    return {"check": name, "ok": True, "items": size}


async def run_checks(args: argparse.Namespace) -> list[dict[str, Any]]:
    client = PortalClient(token=args.token)
    checks = [
        await check_endpoint("hq_users", client.list_hq_users()),
        await check_endpoint("area_officers", client.list_area_officers(args.area_id)),
    ]
    if args.complaint_id:
        checks.append(await check_endpoint("complaint_detail", client.fetch_complaint(args.complaint_id)))
    return checks


def main() -> None:
    args = parse_args()

    print("== SETTINGS ==")
    print(json.dumps({
        "PORTAL_API_BASE_URL": settings.portal_api_base_url,
        "PORTAL_API_BASE_URL_VALID": settings.portal_api_configured(),
        "STORAGE_BASE_URL": settings.storage_base_url,
        "MAX_UPLOAD_BYTES": settings.max_upload_bytes,
        "ALLOWED_UPLOAD_TYPES": list(settings.allowed_upload_types),
        "PROVISIONAL_TTL_SECONDS": settings.provisional_ttl_seconds,
        "RECONCILE_SKEW_SECONDS": settings.reconcile_skew_seconds,
        "SESSION_IDLE_SECONDS": settings.session_idle_seconds,
        "TOKEN_PRESENT": bool(args.token),
    }, indent=2))

    if not settings.portal_api_configured():
        print("\nFix PORTAL_API_BASE_URL before connectivity checks.")
        return

    print("\n== CONNECTIVITY CHECKS ==")
    for check in asyncio.run(run_checks(args)):
        line = f"{check['check']}: ok={check['ok']}"
        if check["ok"]:
            print(f"{line} items={check['items']}")
        else:
            print(f"{line} status={check['status']}")
            print(f"  detail={check['detail']}")


if __name__ == "__main__":
    main()
