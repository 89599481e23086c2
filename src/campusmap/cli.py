"""
CampusMap CLI entrypoint.

Quick local queries against the configured store, the maintenance jobs that
cannot run inside a request (creating the first admin, finishing interrupted
profile/claims sagas) and minting bearer tokens for the local identity backend.
"""

from __future__ import annotations

import argparse
import getpass
import json
from typing import Any

from campusmap.core.errors import DirectoryError, NotFound, ValidationError
from campusmap.core.geo import GeoPoint
from campusmap.core.logging import configure_logging
from campusmap.identity.base import IdentityNotFound
from campusmap.identity.local import LocalIdentityProvider
from campusmap.wiring import get_container


def _emit(payload: Any, *, as_json: bool, lines: list[str]) -> None:
    if as_json:
        print(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    for line in lines:
        print(line)


def _cmd_nearby(args: argparse.Namespace) -> int:
    container = get_container()
    radius = args.radius if args.radius is not None else container.settings.locations.default_nearby_radius_m
    hits = container.locations.query_nearby(GeoPoint(lat=args.lat, lng=args.lng), radius)
    _emit(
        [h.model_dump(mode="json") for h in hits],
        as_json=args.json,
        lines=[f"{h.distance_m:>8.1f} m  {h.location.name} ({h.location.type.value})  id={h.location.id}" for h in hits],
    )
    return 0


def _cmd_bbox(args: argparse.Namespace) -> int:
    records = get_container().locations.query_bounding_box(args.north, args.south, args.east, args.west)
    _emit(
        [r.model_dump(mode="json") for r in records],
        as_json=args.json,
        lines=[
            f"{r.name} ({r.type.value})  {r.coordinates.lat:.5f},{r.coordinates.lng:.5f}  id={r.id}" for r in records
        ],
    )
    return 0


def _cmd_search(args: argparse.Namespace) -> int:
    filters = {"type": args.type, "tags": args.tag, "limit": args.limit}
    records = get_container().locations.search_text(args.query, filters)
    _emit(
        [r.model_dump(mode="json") for r in records],
        as_json=args.json,
        lines=[f"{r.name} ({r.type.value})  id={r.id}" for r in records],
    )
    return 0


def _cmd_bootstrap_admin(args: argparse.Namespace) -> int:
    data: dict[str, Any] = {"name": args.name, "email": args.email}
    if args.uid:
        data["uid"] = args.uid
    else:
        data["password"] = args.password or getpass.getpass("Password for the new admin: ")
    profile = get_container().profiles.bootstrap_admin(data)
    _emit(profile.model_dump(mode="json"), as_json=args.json, lines=[f"Admin created: {profile.uid} <{profile.email}>"])
    return 0


def _cmd_issue_token(args: argparse.Namespace) -> int:
    container = get_container()
    provider = container.identity_provider
    if not isinstance(provider, LocalIdentityProvider):
        raise ValidationError("issue-token only works with the local identity backend")
    # Only uids with a profile get tokens; the API would refuse the rest anyway.
    profile = container.profiles.get_profile(args.uid)
    try:
        token = provider.issue_token(profile.uid)
    except IdentityNotFound as exc:
        raise NotFound(f"Identity {profile.uid} does not exist at the provider") from exc
    _emit({"uid": profile.uid, "token": token}, as_json=args.json, lines=[token])
    return 0


def _cmd_resume_sync(args: argparse.Namespace) -> int:
    summary = get_container().profiles.resume_pending()
    _emit(
        summary,
        as_json=args.json,
        lines=[
            f"claims synced: {summary['claims_synced']}",
            f"deletions completed: {summary['deletions_completed']}",
            f"still pending: {', '.join(summary['claims_failed'] + summary['deletions_failed']) or 'none'}",
        ],
    )
    return 1 if summary["claims_failed"] or summary["deletions_failed"] else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="campusmap", description="Campus directory tools.")
    parser.add_argument("--log-level", default=None, help="Override the configured log level (e.g. DEBUG).")
    sub = parser.add_subparsers(dest="command", required=True)

    near = sub.add_parser("nearby", help="Locations within a radius of a point, nearest first.")
    near.add_argument("--lat", required=True, type=float)
    near.add_argument("--lng", required=True, type=float)
    near.add_argument("--radius", type=float, default=None, help="Meters (default from config).")
    near.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    near.set_defaults(func=_cmd_nearby)

    box = sub.add_parser("bbox", help="Locations inside a bounding box (edges inclusive).")
    box.add_argument("--north", required=True, type=float)
    box.add_argument("--south", required=True, type=float)
    box.add_argument("--east", required=True, type=float)
    box.add_argument("--west", required=True, type=float)
    box.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    box.set_defaults(func=_cmd_bbox)

    search = sub.add_parser("search", help="Case-insensitive search over names, descriptions and tags.")
    search.add_argument("query", nargs="?", default="")
    search.add_argument("--type", default=None, choices=["building", "room", "poi"])
    search.add_argument("--tag", action="append", default=[])
    search.add_argument("--limit", type=int, default=None)
    search.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    search.set_defaults(func=_cmd_search)

    boot = sub.add_parser("bootstrap-admin", help="Create the first admin profile.")
    boot.add_argument("--name", required=True)
    boot.add_argument("--email", required=True)
    boot.add_argument("--uid", default=None, help="Existing identity uid (skips account creation).")
    boot.add_argument("--password", default=None, help="Prompted for when omitted.")
    boot.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    boot.set_defaults(func=_cmd_bootstrap_admin)

    issue = sub.add_parser("issue-token", help="Mint a bearer token for a profile (local identity backend).")
    issue.add_argument("--uid", required=True)
    issue.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    issue.set_defaults(func=_cmd_issue_token)

    resume = sub.add_parser("resume-sync", help="Finish pending claims writes and identity deletions.")
    resume.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    resume.set_defaults(func=_cmd_resume_sync)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint callable used by `python -m campusmap.cli`."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    try:
        return int(args.func(args))
    except DirectoryError as exc:
        print(f"error: {type(exc).__name__}: {exc}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
