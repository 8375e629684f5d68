"""
Run an identity repair/audit pass from the command line.

    python -m app.scripts.repair_identities                  # fix everything
    python -m app.scripts.repair_identities --dry-run        # report only
    python -m app.scripts.repair_identities --identity abc   # one identity
"""

import argparse
import asyncio
import json
import sys

from flock_shared.schemas.repair import ALL_IDENTITIES

from app.core.config import get_settings
from app.core.errors import IdentityError
from app.core.logging import configure_logging
from app.core.services import build_services


async def repair(scope: str, *, fix: bool, batch_size, concurrency) -> int:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    services = build_services(settings)
    try:
        runner = services.repair_runner(batch_size=batch_size, concurrency=concurrency)
        report = await runner.run(scope, fix=fix)
    except IdentityError as exc:
        print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
        return 1
    finally:
        await services.close()

    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.failures else 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile identities and audit their roles.")
    parser.add_argument("--identity", default=ALL_IDENTITIES, help="Credential id (default: all)")
    parser.add_argument("--dry-run", action="store_true", help="Report what would change, write nothing")
    parser.add_argument("--batch-size", type=int, default=None, help="Credentials per page")
    parser.add_argument("--concurrency", type=int, default=None, help="Identities repaired in parallel")
    args = parser.parse_args(argv)

    return asyncio.run(
        repair(
            args.identity,
            fix=not args.dry_run,
            batch_size=args.batch_size,
            concurrency=args.concurrency,
        )
    )


if __name__ == "__main__":
    sys.exit(main())
