"""MoogShip CLI management tool.

Usage:
    python -m cli aramex weight --weight 1.2 --length 30 --width 20 --height 15
    python -m cli aramex rates --from-city Istanbul --to-city Dubai --to-country AE --weight 1.5
    python -m cli currency try-usd 1250.50
    python -m cli hts lookup 6115.10.30
    python -m cli hts search "cotton socks" --limit 5
    python -m cli billing preview --name "Ayse" --balance -12500 --type overdue
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path

from app.services.aramex import (
    AramexClient,
    AramexError,
    Dimensions,
    RateAddress,
    chargeable_weight,
)
from app.services.billing import ReminderType, build_reminder_email, format_balance
from app.services.currency import TRYConverter
from app.services.hts_search import ExcelSearchService, TariffDataUnavailable


def decimal_amount(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid amount: {value!r}")
    if not amount.is_finite():
        raise argparse.ArgumentTypeError(f"invalid amount: {value!r}")
    return amount


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="moogship-cli",
        description="MoogShip CLI",
    )
    sub = parser.add_subparsers(dest="command", help="Top-level command")

    # ── Aramex ───────────────────────────────────────────
    aramex_parser = sub.add_parser("aramex", help="Aramex rates and weights")
    aramex_sub = aramex_parser.add_subparsers(dest="action")

    weight = aramex_sub.add_parser("weight", help="Chargeable weight")
    weight.add_argument("--weight", type=float, required=True, help="Actual weight in kg")
    weight.add_argument("--length", type=float, default=10, help="Length in cm")
    weight.add_argument("--width", type=float, default=10, help="Width in cm")
    weight.add_argument("--height", type=float, default=5, help="Height in cm")

    rates = aramex_sub.add_parser("rates", help="Quote Aramex services")
    rates.add_argument("--from-city", default="Istanbul", help="Origin city")
    rates.add_argument("--from-country", default="TR", help="Origin country code")
    rates.add_argument("--from-postal", default="", help="Origin postal code")
    rates.add_argument("--to-city", required=True, help="Destination city")
    rates.add_argument("--to-country", required=True, help="Destination country code")
    rates.add_argument("--to-postal", default="", help="Destination postal code")
    rates.add_argument("--weight", type=float, required=True, help="Weight in kg")
    rates.add_argument("--pieces", type=int, default=1, help="Number of pieces")
    rates.add_argument("--length", type=float, default=10, help="Length in cm")
    rates.add_argument("--width", type=float, default=10, help="Width in cm")
    rates.add_argument("--height", type=float, default=5, help="Height in cm")

    # ── Currency ─────────────────────────────────────────
    currency_parser = sub.add_parser("currency", help="Currency conversion")
    currency_sub = currency_parser.add_subparsers(dest="action")

    try_usd = currency_sub.add_parser("try-usd", help="Convert TRY to USD")
    try_usd.add_argument("amount", type=decimal_amount, help="Amount in TRY")

    # ── HTS ──────────────────────────────────────────────
    hts_parser = sub.add_parser("hts", help="HTS tariff lookup")
    hts_parser.add_argument("--excel", default=None, help="HTS workbook path")
    hts_sub = hts_parser.add_subparsers(dest="action")

    lookup = hts_sub.add_parser("lookup", help="Duty rate for an HS code")
    lookup.add_argument("code", help="HS code, e.g. 6115.10.30")

    search = hts_sub.add_parser("search", help="Search tariff descriptions")
    search.add_argument("terms", help="Search terms")
    search.add_argument("--limit", type=int, default=20, help="Max results")

    # ── Billing ──────────────────────────────────────────
    billing_parser = sub.add_parser("billing", help="Billing reminders")
    billing_sub = billing_parser.add_subparsers(dest="action")

    preview = billing_sub.add_parser("preview", help="Render a reminder email")
    preview.add_argument("--name", required=True, help="Customer name")
    preview.add_argument("--email", default="customer@example.com", help="Customer email")
    preview.add_argument("--company", default=None, help="Company name")
    preview.add_argument("--balance", type=int, required=True, help="Balance in cents")
    preview.add_argument("--minimum", type=int, default=None, help="Minimum balance in cents")
    preview.add_argument(
        "--type", dest="reminder_type",
        choices=[t.value for t in ReminderType], default="balance",
    )
    preview.add_argument("--subject", default="MoogShip Bakiye Hatırlatması")
    preview.add_argument("--message", default=None, help="Custom message")
    preview.add_argument("--output", "-o", help="Output file path")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    handlers = {
        "aramex": handle_aramex,
        "currency": handle_currency,
        "hts": handle_hts,
        "billing": handle_billing,
    }
    handler = handlers.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()


# ── Command Handlers ────────────────────────────────────

def handle_aramex(args):
    if args.action == "weight":
        weight = chargeable_weight(args.weight, args.length, args.width, args.height)
        print(f"Chargeable weight: {weight} kg")

    elif args.action == "rates":
        client = AramexClient()
        try:
            quotes = asyncio.run(client.calculate_rates(
                origin=RateAddress(args.from_city, args.from_country, args.from_postal),
                destination=RateAddress(args.to_city, args.to_country, args.to_postal),
                weight_kg=args.weight,
                number_of_pieces=args.pieces,
                dimensions=Dimensions(args.length, args.width, args.height),
            ))
        except AramexError as e:
            print(f"❌ {e}")
            sys.exit(1)
        if not quotes:
            print("No Aramex services available for this route.")
            return
        print(f"{'Service':<8} {'Name':<35} {'Amount':<12} {'Days'}")
        print("-" * 62)
        for q in quotes:
            print(f"{q.service_code:<8} {q.service_name:<35} ${q.amount:<11} {q.estimated_days}")

    else:
        print("Usage: moogship-cli aramex {weight|rates}")


def handle_currency(args):
    if args.action == "try-usd":
        converter = TRYConverter()
        amount = args.amount
        usd = asyncio.run(converter.try_to_usd(amount))
        print(f"{amount} TRY = ${usd}")
    else:
        print("Usage: moogship-cli currency try-usd 1000")


def handle_hts(args):
    svc = ExcelSearchService(args.excel)
    try:
        if args.action == "lookup":
            result = svc.search_hs_code(args.code)
            if not result:
                print(f"HS code {args.code} not found")
                sys.exit(1)
            print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))

        elif args.action == "search":
            results = svc.search_description(args.terms, limit=args.limit)
            if not results:
                print("No matching tariff lines.")
                return
            for r in results:
                print(f"{r.hs_code:<14} {r.general_rate:<10} {r.description[:60]}")

        else:
            print("Usage: moogship-cli hts {lookup|search}")
    except TariffDataUnavailable as e:
        print(f"❌ {e}")
        sys.exit(1)


def handle_billing(args):
    if args.action == "preview":
        reminder_type = ReminderType(args.reminder_type)
        body = build_reminder_email(
            to=args.email,
            user_name=args.name,
            company_name=args.company,
            current_balance=args.balance,
            minimum_balance=args.minimum,
            reminder_type=reminder_type,
            subject=args.subject,
            custom_message=args.message,
        )
        if args.output:
            Path(args.output).write_text(body, encoding="utf-8")
            print(f"{reminder_type.label} ({format_balance(args.balance)}) saved to {args.output}")
        else:
            print(body)
    else:
        print("Usage: moogship-cli billing preview --name NAME --balance -1000")


if __name__ == "__main__":
    main()
