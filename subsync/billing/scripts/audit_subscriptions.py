"""Audit entitled subscriptions against Stripe and fix the ones that drifted.

Run inside the backend container:
    python -m subsync.billing.scripts.audit_subscriptions             # full scan, asks before fixing
    python -m subsync.billing.scripts.audit_subscriptions --dry-run   # report only
    python -m subsync.billing.scripts.audit_subscriptions --yes       # fix without asking
    python -m subsync.billing.scripts.audit_subscriptions --email someone@example.com
    python -m subsync.billing.scripts.audit_subscriptions --user-id <id> --resync
"""

import argparse
import asyncio
import json
import sys
from collections.abc import Callable

from subsync.billing.audit import (
    AuditOutcome,
    AuditResult,
    AuditSummary,
    audit_single,
    resync_from_remote,
    run_batch_audit,
)
from subsync.database import async_session_factory, engine
from subsync.services.subscription_service import get_user_by_email


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    target = parser.add_mutually_exclusive_group()
    target.add_argument("--email", help="audit only the user with this e-mail")
    target.add_argument("--user-id", help="audit only the user with this id")
    parser.add_argument("--dry-run", action="store_true", help="report findings without writing")
    parser.add_argument("--yes", "--force", action="store_true", help="apply fixes without asking")
    parser.add_argument(
        "--resync",
        action="store_true",
        help="rebuild the targeted user's row from their Stripe subscriptions",
    )
    parser.add_argument("--json", action="store_true", help="print the summary as JSON")
    return parser


def format_result(result: AuditResult) -> str:
    line = f"  [{result.outcome.value:>12}] {result.user_id}  {result.reason.value}"
    if result.new_status:
        arrow = "->" if result.applied else "=>"
        line += f"  {result.previous_status} {arrow} {result.new_status}"
    if result.message:
        line += f"  ({result.message})"
    return line


def print_summary(summary: AuditSummary, as_json: bool = False) -> None:
    if as_json:
        print(json.dumps(summary.to_dict(), indent=2, default=str))
        return
    mode = "DRY RUN" if summary.dry_run else "APPLIED"
    print(f"\nSubscription audit ({mode})")
    for result in summary.results:
        print(format_result(result))
    print(
        f"\nTotal: {summary.total}  corrected: {summary.corrected}  valid: {summary.valid}  "
        f"inconclusive: {summary.inconclusive}  errors: {summary.errors}"
    )


async def resolve_user_id(email: str | None, user_id: str | None) -> str | None:
    if user_id:
        return user_id
    if email is None:
        return None
    async with async_session_factory() as db:
        user = await get_user_by_email(db, email)
    return user.id if user else None


async def run_targeted(user_id: str, apply: bool, resync: bool) -> AuditSummary:
    summary = AuditSummary(dry_run=not apply)
    async with async_session_factory() as db:
        if resync:
            if apply:
                subscription = await resync_from_remote(db, user_id)
                await db.commit()
                status = subscription.status if subscription else "nothing to resync"
                print(f"Resynced {user_id} from Stripe: {status}")
            else:
                print("--resync writes to the database; skipped in dry-run mode")
        result = await audit_single(db, user_id, apply=apply)
        await db.commit()
    summary.results.append(result)
    return summary


async def main(argv: list[str] | None = None, ask: Callable[[str], str] = input) -> int:
    args = build_parser().parse_args(argv)

    try:
        if args.email or args.user_id:
            user_id = await resolve_user_id(args.email, args.user_id)
            if user_id is None:
                print(f"ERROR: no user found for {args.email}")
                return 1
            summary = await run_targeted(user_id, apply=not args.dry_run, resync=args.resync)
            print_summary(summary, as_json=args.json)
            return 0

        if args.resync:
            print("ERROR: --resync needs --email or --user-id")
            return 2

        if args.dry_run or not args.yes:
            summary = await run_batch_audit(async_session_factory, apply=False)
            print_summary(summary, as_json=args.json)
            if args.dry_run or summary.corrected == 0:
                return 0
            answer = ask(f"\nApply {summary.corrected} correction(s)? Type 'yes' to confirm: ")
            if answer.strip().lower() != "yes":
                print("Aborted, nothing changed.")
                return 0

        summary = await run_batch_audit(async_session_factory, apply=True)
        print_summary(summary, as_json=args.json)
        return 1 if any(r.outcome is AuditOutcome.ERROR for r in summary.results) else 0
    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
