from __future__ import annotations

import argparse
import asyncio

from skugate.core.logging import configure_logging
from skugate.domain.billing import PolicyScope
from skugate.persistence.db import SessionLocal
from skugate.persistence.repos import policies as policies_repo
from skugate.services.policy_store import get_policy_store


def _flag(value: str) -> bool:
    return value.lower() in {"1", "true", "yes", "on"}


async def _seed(args: argparse.Namespace) -> None:
    # Install the platform default so resolution never falls back to the built-in policy.
    async with SessionLocal() as session:
        existing = await policies_repo.get_open_policy(session, PolicyScope.GLOBAL.value)
        await session.commit()
        if existing is not None and not args.replace:
            print(f"global_policy_exists policy_id={existing.id} version={existing.version}")
            return
        result = await get_policy_store().write_policy(
            session,
            scope=PolicyScope.GLOBAL.value,
            scope_id=None,
            flags={
                "count_active_private": _flag(args.count_active_private),
                "count_preorder": _flag(args.count_preorder),
                "count_zero_price": _flag(args.count_zero_price),
                "require_image": _flag(args.require_image),
                "require_currency": _flag(args.require_currency),
            },
            actor_id="cli",
            actor_role="platform_operator",
            note=args.note,
            reason="seed_global_policy",
        )
    print(f"policy_id={result.record.policy_id}")
    print(f"version={result.record.version}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the global billing policy")
    parser.add_argument("--count-active-private", default="false")
    parser.add_argument("--count-preorder", default="true")
    parser.add_argument("--count-zero-price", default="false")
    parser.add_argument("--require-image", default="false")
    parser.add_argument("--require-currency", default="false")
    parser.add_argument("--note", default="platform default")
    parser.add_argument("--replace", action="store_true", help="Supersede an existing global policy")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_seed(args))


if __name__ == "__main__":
    main()
