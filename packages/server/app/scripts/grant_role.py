"""
Grant or revoke Admin/SuperAdmin for an identity.

    python -m app.scripts.grant_role --email pastor@example.org --role SuperAdmin --granted-by ops
    python -m app.scripts.grant_role --email pastor@example.org --revoke --granted-by ops
"""

import argparse
import asyncio
import sys

from flock_shared.schemas.common import GrantRole

from app.core.config import get_settings
from app.core.errors import IdentityError
from app.core.services import build_services
from app.services.normalizer import normalize_email


async def run(args) -> int:
    services = build_services(get_settings())
    try:
        identity_id = args.identity
        if identity_id is None:
            email = normalize_email(args.email)
            matches = await services.store.get_credential_by_email(email)
            if len(matches) != 1:
                print(f"Expected one credential for {email}, found {len(matches)}.", file=sys.stderr)
                return 1
            identity_id = matches[0].id

        if args.revoke:
            grants = await services.resolver.list_grants(identity_id)
            targets = [
                g for g in grants
                if g.is_active() and (args.role is None or g.role == args.role)
            ]
            for grant in targets:
                await services.resolver.revoke(identity_id, grant.id, args.granted_by)
            print(f"Revoked {len(targets)} grant(s) for {identity_id}.")
        else:
            grant = await services.resolver.grant(
                identity_id, GrantRole(args.role or GrantRole.ADMIN.value), args.granted_by
            )
            print(f"Granted {grant.role} to {identity_id} (grant {grant.id}).")

        effective = await services.resolver.resolve_role(identity_id, use_cache=False)
        print(f"Effective role: {effective.role.value} ({effective.source.value}).")
        return 0
    except IdentityError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    finally:
        await services.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Grant or revoke an elevated role.")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--email", help="Email of the credential")
    target.add_argument("--identity", help="Credential id")
    parser.add_argument("--role", choices=[r.value for r in GrantRole], help="Role (default Admin)")
    parser.add_argument("--granted-by", required=True, help="Operator recorded on the grant")
    parser.add_argument("--revoke", action="store_true", help="Revoke active grants instead")

    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))
