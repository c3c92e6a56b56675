#!/usr/bin/env python3
"""
Fetch one FHIR resource (or run a search) and print it as an indented tree.

Usage examples:
  fhir-fetch Patient/example                      # default server (FHIR_DEFAULT_SERVER)
  fhir-fetch Patient --search name=smith --server hapi
  fhir-fetch https://hapi.fhir.org/baseR4/Patient/1 --collapsed
  fhir-fetch Observation/123 --base-url https://fhir.example.org/r4 --auth bearer --token abc

Exit status is 0 on success, 1 when the server returns an error.
"""
from __future__ import annotations

import argparse
import json
import sys
from typing import Dict, List, Optional

from dotenv import load_dotenv

from .gateways.auth import AUTH_MODES, AUTH_NONE, ServerConfigError
from .gateways.fhir_client import FhirClient
from .gateways.fhir_gateway import FhirError
from .gateways.servers import FHIR_SERVERS, auth_from_fields, custom_server_config, default_server, preset
from .services.resource_display import resource_summary_rows
from .services.resource_tree import build_tree, render_lines


def _parse_search(pairs: List[str]) -> Dict[str, List[str]]:
    params: Dict[str, List[str]] = {}
    for pair in pairs:
        key, sep, value = pair.partition('=')
        if not sep or not key:
            raise SystemExit(f"--search expects name=value, got '{pair}'")
        params.setdefault(key, []).append(value)
    return params


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Print a FHIR resource as a tree")
    ap.add_argument("target", help="Type/id, absolute URL, or a bare type when --search is given")
    ap.add_argument("--server", choices=sorted(k for k in FHIR_SERVERS if k != 'custom'), help="Preset server")
    ap.add_argument("--base-url", help="Custom server base URL (overrides --server)")
    ap.add_argument("--auth", choices=AUTH_MODES, default=AUTH_NONE, help="Authentication mode for --base-url")
    ap.add_argument("--username")
    ap.add_argument("--password")
    ap.add_argument("--token")
    ap.add_argument("--token-url")
    ap.add_argument("--client-id")
    ap.add_argument("--client-secret")
    ap.add_argument("--search", action="append", default=[], metavar="NAME=VALUE",
                    help="Search parameter; repeat for multiple values")
    ap.add_argument("--collapsed", action="store_true", help="Collapse every list")
    ap.add_argument("--json", action="store_true", help="Print raw JSON instead of the tree")
    return ap


def _client_for(args: argparse.Namespace) -> FhirClient:
    if args.base_url:
        fields = {
            'username': args.username, 'password': args.password, 'token': args.token,
            'token_url': args.token_url, 'client_id': args.client_id, 'client_secret': args.client_secret,
        }
        return FhirClient(custom_server_config(args.base_url, auth_from_fields(args.auth, fields)))
    return FhirClient(preset(args.server) if args.server else default_server())


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    try:
        client = _client_for(args)
    except ServerConfigError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2

    try:
        if args.search or '/' not in args.target:
            bundle = client.search_resources(args.target, _parse_search(args.search))
            if args.json:
                print(json.dumps(bundle.raw, indent=2))
                return 0
            total = bundle.total if bundle.total is not None else len(bundle.entries)
            print(f"{total} result(s) from {client.base_url}")
            for row in resource_summary_rows(bundle):
                print(f"  {row['type']}/{row['id']}  {row['name']}")
            return 0
        resource = client.get_resource_by_url(args.target)
    except FhirError as err:
        print(f"[ERROR] {err.status}: {err.message}", file=sys.stderr)
        for issue in err.issue:
            print(f"  - {issue.severity}/{issue.code}: {issue.diagnostics or ''}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(resource, indent=2))
        return 0
    for line in render_lines(build_tree(resource, default_expanded=not args.collapsed)):
        print(line)
    return 0


if __name__ == "__main__":
    sys.exit(main())
