#!/usr/bin/env python3
"""
moodledger -- operator command line.

Runs against the same storage as the API (DATABASE_URL and friends come from
the environment or .env, see core/config.py).

Usage:
  python main.py grant alice 500
  python main.py grant alice 50 --reason daily_login --description "Daily check-in"
  python main.py balance alice
  python main.py create-collectible alice "Consistency Seed" --attributes '{"rarity": "Uncommon"}'
  python main.py verify-ledger
  python main.py verify-ledger alice
  python main.py distribute-pool --top 50 --percentage 85
  python main.py purge-sessions

Exit status is 0 on success, 1 when the command failed or a ledger check
found a mismatch.
"""

import argparse
import json
import logging
from typing import Optional

from auth.models import Account
from container import AppContainer, build_container
from core.errors import AccountNotFound, CoreError, InvalidInput
from ledger.models import LedgerReason

logger = logging.getLogger("moodledger.cli")


def _account(container: AppContainer, username: str) -> Account:
    account = container.directory.find_by_username(username)
    if account is None:
        raise AccountNotFound(f"No account named '{username}'.")
    return account


def _cmd_grant(container: AppContainer, args: argparse.Namespace) -> int:
    account = _account(container, args.username)
    balance = container.ledger.credit(account.id, args.amount, args.reason, args.description)
    print(f"  Granted {args.amount} tokens to {account.username}. Balance: {balance}")
    return 0


def _cmd_balance(container: AppContainer, args: argparse.Namespace) -> int:
    account = _account(container, args.username)
    print(f"  {account.username}: {container.ledger.balance(account.id)} tokens")
    return 0


def _cmd_create_collectible(container: AppContainer, args: argparse.Namespace) -> int:
    account = _account(container, args.username)
    try:
        attributes = json.loads(args.attributes) if args.attributes else {}
    except json.JSONDecodeError as exc:
        raise InvalidInput(f"--attributes is not valid JSON: {exc.msg}") from exc
    item = container.registry.create(account.id, args.name, attributes, args.mint_cost, args.burn_value)
    print(f"  Created collectible {item.id} '{item.name}' for {account.username} (mint cost {item.mint_cost}).")
    return 0


def _cmd_verify_ledger(container: AppContainer, args: argparse.Namespace) -> int:
    if args.username:
        account = _account(container, args.username)
        balance = container.ledger.verify(account.id)
        print(f"  {account.username}: OK ({balance} tokens)")
        return 0
    failed = container.ledger.verify_all()
    if failed:
        print(f"  [!] Ledger mismatch for account id(s): {', '.join(str(i) for i in failed)}")
        return 1
    print("  All ledgers consistent.")
    return 0


def _cmd_distribute_pool(container: AppContainer, args: argparse.Namespace) -> int:
    settings = container.settings
    top_n = args.top if args.top is not None else settings.pool_top_contributors
    percentage = args.percentage if args.percentage is not None else settings.pool_top_share_percent
    payouts = container.pool.distribute(top_n=top_n, percentage=percentage)
    for p in payouts:
        print(f"  #{p.rank:<3} {p.username:<24} +{p.tokens}")
    print(f"  Paid {sum(p.tokens for p in payouts)} tokens to {len(payouts)} contributor(s).")
    return 0


def _cmd_purge_sessions(container: AppContainer, args: argparse.Namespace) -> int:
    count = container.sessions.purge_expired()
    print(f"  Purged {count} expired session(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="moodledger",
        description="Operator tools for accounts, the token ledger and collectibles.",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    grant = sub.add_parser("grant", help="Credit tokens to an account")
    grant.add_argument("username")
    grant.add_argument("amount", type=int)
    grant.add_argument(
        "--reason",
        choices=[r.value for r in LedgerReason],
        default=LedgerReason.admin_grant.value,
        metavar="REASON",
        help="Ledger reason recorded with the credit (default: admin_grant)",
    )
    grant.add_argument("--description", default="", help="Free-text note stored on the ledger entry")
    grant.set_defaults(handler=_cmd_grant)

    balance = sub.add_parser("balance", help="Show an account's balance")
    balance.add_argument("username")
    balance.set_defaults(handler=_cmd_balance)

    create = sub.add_parser("create-collectible", help="Give an account a new unminted collectible")
    create.add_argument("username")
    create.add_argument("name")
    create.add_argument("--attributes", metavar="JSON", help="JSON object stored with the collectible")
    create.add_argument("--mint-cost", type=int, default=None, help="Tokens required to mint (default: MINT_COST)")
    create.add_argument("--burn-value", type=int, default=None, help="Tokens released on burn (default: mint cost)")
    create.set_defaults(handler=_cmd_create_collectible)

    verify = sub.add_parser("verify-ledger", help="Check balance == sum of ledger entries")
    verify.add_argument("username", nargs="?", help="Check one account instead of all")
    verify.set_defaults(handler=_cmd_verify_ledger)

    distribute = sub.add_parser("distribute-pool", help="Pay the current pool round to its top contributors")
    distribute.add_argument("--top", type=int, default=None, help="Number of contributors paid (default: POOL_TOP_CONTRIBUTORS)")
    distribute.add_argument(
        "--percentage", type=int, default=None, help="Percent of the round paid out (default: POOL_TOP_SHARE_PERCENT)"
    )
    distribute.set_defaults(handler=_cmd_distribute_pool)

    purge = sub.add_parser("purge-sessions", help="Delete expired sessions")
    purge.set_defaults(handler=_cmd_purge_sessions)

    return parser


def main(argv: Optional[list[str]] = None, container: Optional[AppContainer] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 1

    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    owned = container is None
    if container is None:
        container = build_container()
    try:
        return args.handler(container, args)
    except CoreError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        if owned:
            container.close()


if __name__ == "__main__":
    raise SystemExit(main())
