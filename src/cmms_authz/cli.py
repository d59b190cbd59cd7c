"""Operator command line for the RBAC store.

This is the break-glass path: it talks to the stores directly and does
not require the operator to hold system:admin. Use it to create the
schema, seed roles, and appoint the first administrator.

Usage:
    cmms-authz init-db
    cmms-authz seed
    cmms-authz make-admin u-42 --by ops@example.com
    cmms-authz grant u-7 TECHNICIAN --by ops@example.com
    cmms-authz check u-7 assets:write
    cmms-authz report --probe assets:write --probe users:delete
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from cmms_authz.auth.errors import AuthzError
from cmms_authz.bootstrap import AppContext, build_context
from cmms_authz.config import load_settings
from cmms_authz.services.seed import (
    DEFAULT_PROBES,
    initialize_rbac,
    make_admin,
    permission_report,
)
from cmms_authz.storage.repository import PrincipalRepository

logger = logging.getLogger("cmms_authz.cli")

DEFAULT_ACTOR = "cli"


# ====================== Commands ======================


async def _init_db(ctx: AppContext, args: argparse.Namespace) -> int:
    await ctx.db.init_db()
    print(f"Schema created on {ctx.db.url}")
    return 0


async def _seed(ctx: AppContext, args: argparse.Namespace) -> int:
    seeds = [r.model_dump() for r in ctx.settings.authz.roles]
    report = await initialize_rbac(
        ctx.role_store,
        ctx.bindings,
        seeds,
        default_role=args.default_role or ctx.settings.authz.default_role,
    )
    print(f"Created roles: {', '.join(report.created_roles) or 'none'}")
    print(f"Updated roles: {', '.join(report.updated_roles) or 'none'}")
    print(f"Assigned {report.default_role} to {len(report.assigned_default)} principal(s)")
    return 0


async def _roles(ctx: AppContext, args: argparse.Namespace) -> int:
    counts = await ctx.role_store.role_binding_counts()
    for role in await ctx.role_store.list_roles():
        marker = " (default)" if role.is_default else ""
        print(f"{role.name}{marker}: {role.description}")
        print(f"    bindings: {counts.get(role.name, 0)}")
        print(f"    permissions: {', '.join(role.permission_names) or '-'}")
    return 0


async def _permissions(ctx: AppContext, args: argparse.Namespace) -> int:
    for resource, perms in ctx.catalog.by_resource().items():
        print(f"{resource}: {', '.join(p.action.value for p in perms)}")
    print(f"Total: {len(ctx.catalog)}")
    return 0


async def _grant(ctx: AppContext, args: argparse.Namespace) -> int:
    binding = await ctx.bindings.grant(args.principal, args.role, granted_by=args.by)
    print(f"{binding.principal_id} holds {binding.role_name} (binding {binding.id})")
    return 0


async def _revoke(ctx: AppContext, args: argparse.Namespace) -> int:
    await ctx.bindings.revoke(args.principal, args.role, revoked_by=args.by)
    print(f"Revoked {args.role} from {args.principal}")
    return 0


async def _set_roles(ctx: AppContext, args: argparse.Namespace) -> int:
    roles = await ctx.bindings.replace_all_roles(args.principal, args.roles, granted_by=args.by)
    print(f"{args.principal} roles: {', '.join(sorted(roles)) or 'none'}")
    return 0


async def _make_admin(ctx: AppContext, args: argparse.Namespace) -> int:
    super_role = ctx.settings.authz.super_role
    await make_admin(ctx.bindings, args.principal, granted_by=args.by, super_role=super_role)
    print(f"{args.principal} is now {super_role}")
    return 0


async def _check(ctx: AppContext, args: argparse.Namespace) -> int:
    if args.any:
        allowed = await ctx.engine.can_any(args.principal, args.permissions)
    else:
        allowed = await ctx.engine.can_all(args.principal, args.permissions)
    mode = "any of" if args.any else "all of"
    print(f"{'ALLOW' if allowed else 'DENY'}: {args.principal} {mode} {', '.join(args.permissions)}")
    return 0 if allowed else 1


async def _report(ctx: AppContext, args: argparse.Namespace) -> int:
    principals = args.principals
    if not principals:
        async with ctx.db.session() as session:
            principals = await PrincipalRepository(session).list_ids()
    rows = await permission_report(ctx.engine, principals, args.probe or DEFAULT_PROBES)
    print(json.dumps(rows, indent=2))
    return 0


COMMANDS = {
    "init-db": _init_db,
    "seed": _seed,
    "roles": _roles,
    "permissions": _permissions,
    "grant": _grant,
    "revoke": _revoke,
    "set-roles": _set_roles,
    "make-admin": _make_admin,
    "check": _check,
    "report": _report,
}


# ====================== Entry point ======================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cmms-authz", description="RBAC store operations")
    parser.add_argument("--config", help="Path to a YAML config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables (development/testing)")

    seed = sub.add_parser("seed", help="Create configured roles and assign the default role")
    seed.add_argument("--default-role", help="Override the configured default role")

    sub.add_parser("roles", help="List roles with permissions and binding counts")
    sub.add_parser("permissions", help="List the permission catalog")

    for name, help_text in (("grant", "Grant a role"), ("revoke", "Revoke a role")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("principal")
        p.add_argument("role")
        p.add_argument("--by", default=DEFAULT_ACTOR, help="Acting operator id")

    set_roles = sub.add_parser("set-roles", help="Set a principal's roles to exactly ROLES")
    set_roles.add_argument("principal")
    set_roles.add_argument("roles", nargs="*")
    set_roles.add_argument("--by", default=DEFAULT_ACTOR)

    admin = sub.add_parser("make-admin", help="Make a principal the super-role only")
    admin.add_argument("principal")
    admin.add_argument("--by", default=DEFAULT_ACTOR)

    check = sub.add_parser("check", help="Check permissions; exit 1 on deny")
    check.add_argument("principal")
    check.add_argument("permissions", nargs="+")
    check.add_argument("--any", action="store_true", help="Require any instead of all")

    report = sub.add_parser("report", help="Per-principal roles and probe results")
    report.add_argument("principals", nargs="*")
    report.add_argument("--probe", action="append", help="Permission to probe (repeatable)")

    return parser


async def _run(args: argparse.Namespace) -> int:
    ctx = build_context(load_settings(args.config))
    try:
        return await COMMANDS[args.command](ctx, args)
    finally:
        await ctx.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except AuthzError as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
