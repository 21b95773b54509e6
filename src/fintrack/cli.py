import argparse
import csv
import io
import json
import logging
import sys
from datetime import datetime, timedelta, timezone

import yaml

from . import __version__
from .bend import BendClient, SessionStore
from .bend.auth import OTPExchange, ensure_session, login_with_otp, login_with_refresh_token
from .bend.models import Account, TransactionCount
from .bend.transactions import (
    DEFAULT_PAGE_SIZE,
    DEFAULT_SORT_BY,
    DEFAULT_SORT_ORDER,
    TransactionFilters,
    fetch_all_transactions,
    fetch_transactions,
)
from .config import (
    Settings,
    find_config_file,
    get_config_value,
    init_local_config,
    load_settings,
    update_config_file,
    validate_config_key,
    validate_config_value,
)
from .errors import FintrackError, SessionError
from .logging_setup import setup_logging
from .storage.staging_store import StagingStore, transactions_filename

logger = logging.getLogger(__name__)

DATE_FORMATS = ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%SZ", "%Y-%m-%d")


def parse_date(value: str, field: str) -> datetime:
    for fmt in DATE_FORMATS:
        try:
            dt = datetime.strptime(value, fmt)
        except ValueError:
            continue
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    raise ValueError(f"invalid {field} date format (use YYYY-MM-DD or RFC3339): {value}")


def parse_date_range(
    date_from: str | None,
    date_to: str | None,
    days: int,
    now: datetime | None = None,
) -> tuple[datetime, datetime]:
    now = now or datetime.now(tz=timezone.utc)
    if date_from and date_to:
        start, end = parse_date(date_from, "from"), parse_date(date_to, "to")
        if start > end:
            raise ValueError(f"from date ({date_from}) cannot be after to date ({date_to})")
        return start, end
    if date_from:
        return parse_date(date_from, "from"), now
    if date_to:
        end = parse_date(date_to, "to")
        return end - timedelta(days=days), end
    return now - timedelta(days=days), now


def build_client(settings: Settings, log_http: bool = False) -> BendClient:
    return BendClient.create(
        base_url=settings.bend.base_url,
        device=settings.device_profile(),
        rate_limit_seconds=settings.bend.rate_limit,
        timeout=settings.bend.timeout,
        origin=settings.bend.origin,
        log_http=log_http or settings.log_http,
    )


def _print_user(client: BendClient) -> None:
    user = client.check_session()
    print(f"User: {user.full_name} ({user.email})")
    print(f"ID: {user.uuid}")
    print(f"Phone: {user.phone}")
    print(f"Timezone: {user.timezone}")
    print(f"Role: {user.role}")
    print("Email verified" if user.email_verified else "Email not verified")
    print("Phone verified" if user.phone_verified else "Phone not verified")
    if user.beta_access:
        print("Beta access enabled")
    if user.google_linked:
        print("Google account linked")
    if user.apple_linked:
        print("Apple account linked")


def _refresh_stored(client: BendClient, store: SessionStore) -> int:
    try:
        session = client.refresh_session(store.load())
    except FintrackError as e:
        print(f"Session refresh failed: {e}")
        print("Run 'fintrack bend login' to re-authenticate")
        return 1
    store.save(session)
    print("Session refreshed successfully")
    user = client.check_session()
    print(f"User: {user.full_name} ({user.email})")
    return 0


def cmd_check(settings: Settings, args: argparse.Namespace) -> int:
    store = SessionStore(settings.bend.session_file)
    info = store.describe()

    print("Bend Session Status:")
    print("=========================")

    if not info.exists:
        print("No session file found")
        print("Run 'fintrack bend login' to authenticate")
        return 0

    print(f"Session file: {store.path}")

    with build_client(settings, args.log_http) as client:
        if not info.valid:
            print("Session expired or invalid")
            if info.has_refresh_token:
                print("Trying to refresh session...")
                return _refresh_stored(client, store)
            print("Run 'fintrack bend login' to re-authenticate")
            return 0

        print("Session is valid")
        print(f"Expires: {info.expires_at:%Y-%m-%d %H:%M:%S}")
        minutes = int(info.time_remaining.total_seconds() // 60) if info.time_remaining else 0
        print(f"Time remaining: {minutes // 60}h{minutes % 60:02d}m")
        if info.has_refresh_token:
            print("Refresh token available")

        print("\nTesting API connection...")
        client.session = store.load()
        try:
            _print_user(client)
        except FintrackError as e:
            print(f"API test failed: {e}")
            if info.has_refresh_token:
                print("Trying to refresh session...")
                return _refresh_stored(client, store)
            raise
        print("API connection successful")
    return 0


def _prompt(label: str) -> str:
    print(label, end="", flush=True)
    return sys.stdin.readline().strip()


def cmd_login(settings: Settings, args: argparse.Namespace) -> int:
    store = SessionStore(settings.bend.session_file)

    with build_client(settings, args.log_http) as client:
        info = store.describe()
        if info.exists and info.valid:
            client.session = store.load()
            try:
                user = client.check_session()
            except FintrackError as e:
                logger.info("Stored session rejected by the API: %s", e)
            else:
                print("Already authenticated with Bend")
                print(f"Logged in as: {user.full_name} ({user.email})")
                print("Use 'fintrack bend check' to see session details")
                return 0

        print("Bend Authentication")
        print("============================")

        if args.otp_mode or args.phone:
            phone = args.phone or _prompt("Enter phone number (e.g., +1234567890): ")
            exchange = OTPExchange.start(phone, client.device, channel=args.channel)
            print(f"Requesting OTP for {exchange.phone}...")
            print(f"Using Request ID: {exchange.request_id}")
            print(f"Using Device Hash: {exchange.device.device_id}")

            result = login_with_otp(
                client,
                store,
                exchange,
                read_code=lambda: args.otp or _prompt("Enter OTP code: "),
            )
            print("OTP verified successfully!")

            path = update_config_file(
                settings.config_file,
                {
                    "bend.device_hash": exchange.device.device_id,
                    "bend.refresh_token": result.session.refresh_token,
                },
            )
            print(f"Configuration updated with device_hash and refresh_token: {path}")
            session = result.session
        elif settings.bend.refresh_token:
            print("Using refresh token from configuration...")
            session = login_with_refresh_token(client, store, settings.bend.refresh_token)
        else:
            print("No refresh token found in configuration.")
            print("Please add your refresh token to the config file:")
            print('  bend:\n    refresh_token: "your-refresh-token-here"')
            print("\nOr use OTP-based login:")
            print("  fintrack bend login --otp-mode --phone +1234567890")
            raise SessionError("Refresh token required for authentication")

        print("Authentication successful!")
        print(f"Session saved to: {store.path}")
        if session.expires_at is not None:
            print(f"Token expires: {session.expires_at:%Y-%m-%d %H:%M:%S}")

        try:
            client.check_session()
        except FintrackError as e:
            print(f"Warning: Session verification failed: {e}")
        else:
            print("Authenticated successfully")

    print("\nNext steps:")
    print("- Check accounts: fintrack bend accounts")
    print("- Fetch transactions: fintrack bend transactions")
    return 0


def render_accounts(accounts: list[Account], output: str) -> str:
    if output == "json":
        return json.dumps([a.model_dump(mode="json") for a in accounts], ensure_ascii=False, indent=2)

    if output == "csv":
        buf = io.StringIO()
        w = csv.writer(buf)
        w.writerow(["ID", "HolderName", "Bank", "Type", "Balance", "Currency", "MaskedAccount", "IFSC", "LastUpdate"])
        for a in accounts:
            last = a.last_fetched_at.strftime("%Y-%m-%dT%H:%M:%SZ") if a.last_fetched_at else ""
            w.writerow(
                [
                    a.uuid,
                    a.holder_name,
                    a.bank_name,
                    a.type,
                    f"{a.current_balance:.2f}",
                    a.currency,
                    a.masked_account_number,
                    a.ifsc_code,
                    last,
                ]
            )
        return buf.getvalue().rstrip("\n")

    lines = [
        f"{'ID':<36} | {'Holder Name':<33} | {'Bank':<19} | {'Type':<7} | {'Balance':>14} | Last Updated",
        "-" * 37 + "+" + "-" * 35 + "+" + "-" * 21 + "+" + "-" * 9 + "+" + "-" * 16 + "+" + "-" * 18,
    ]
    for a in accounts:
        bank = a.bank_name if len(a.bank_name) <= 19 else a.bank_name[:16] + "..."
        holder = a.holder_name if len(a.holder_name) <= 33 else a.holder_name[:30] + "..."
        last = a.last_fetched_at.strftime("%Y-%m-%d %H:%M") if a.last_fetched_at else "-"
        balance = f"{a.current_balance:.2f} {a.currency}"
        lines.append(f"{a.uuid:<36} | {holder:<33} | {bank:<19} | {a.type:<7} | {balance:>14} | {last}")
    return "\n".join(lines)


def cmd_accounts(settings: Settings, args: argparse.Namespace) -> int:
    store = SessionStore(settings.bend.session_file)
    with build_client(settings, args.log_http) as client:
        ensure_session(client, store)
        print("Fetching accounts...")
        accounts = client.get_accounts()

    if not accounts:
        print("No accounts found")
        return 0

    print(f"\nFound {len(accounts)} account(s):\n")
    print(render_accounts(accounts, args.output))
    return 0


def _format_count(c: TransactionCount) -> str:
    return (
        f"{c.date}: {c.total_incoming:.2f} in ({c.incoming_count} txns), "
        f"{c.total_outgoing:.2f} out ({c.outgoing_count} txns)"
    )


def cmd_transactions(settings: Settings, args: argparse.Namespace) -> int:
    try:
        date_from, date_to = parse_date_range(args.date_from, args.date_to, args.days)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    filters = TransactionFilters(
        limit=args.limit,
        count_by=args.count_by or "",
        time_filter=args.time_filter or "",
        sort_by=args.sort_by,
        sort_order=args.sort_order,
        start_date=date_from,
        end_date=date_to,
        account_id=args.account_id or "",
        category_id=args.category_id or "",
        subcategory_id=args.subcategory_id or "",
        include_count_by=args.include_totals,
        include_detailed=args.include_detailed,
        or_category=args.or_category,
    )

    print(f"Fetching transactions from {date_from:%Y-%m-%d} to {date_to:%Y-%m-%d}")

    store = SessionStore(settings.bend.session_file)
    with build_client(settings, args.log_http) as client:
        ensure_session(client, store)
        user_id = client.get_user_id()
        print(f"Fetching transactions for user: {user_id}")

        if args.all:
            result = fetch_all_transactions(client, user_id, filters)
            transactions, counts, total = result.transactions, result.counts, result.total
        else:
            page = fetch_transactions(client, user_id, filters)
            transactions, counts, total = page.transactions, page.counts, page.total

    if not transactions:
        print("No transactions found")
        return 0

    print(f"Found {len(transactions)} transactions (Total in API: {total})")

    staging = StagingStore(args.staging_dir or settings.staging_dir)
    filename = transactions_filename(filters, date_from, date_to)
    staging.save_transactions(filename, transactions, counts, date_from, date_to)
    print(f"Saved {len(transactions)} transactions to {filename}")

    for c in counts:
        print(_format_count(c))

    print(f"Staging directory: {staging.root_dir}")
    return 0


def mask(value: str | None, show: int = 4) -> str:
    if not value:
        return "None"
    if len(value) <= show:
        return "*" * len(value)
    return value[:show] + "*" * (len(value) - show)


def _settings_data(settings: Settings) -> dict:
    return settings.model_dump(mode="json", exclude={"config_file"})


def cmd_config_show(settings: Settings, args: argparse.Namespace) -> int:
    data = _settings_data(settings)
    if data["bend"].get("refresh_token"):
        data["bend"]["refresh_token"] = mask(data["bend"]["refresh_token"])
    print(f"# config file: {settings.config_file or 'none (defaults and environment)'}")
    print(yaml.safe_dump(data, sort_keys=False), end="")
    return 0


def cmd_config_get(settings: Settings, args: argparse.Namespace) -> int:
    validate_config_key(args.key)
    value = get_config_value(_settings_data(settings), args.key)
    if isinstance(value, dict):
        print(yaml.safe_dump(value, sort_keys=False), end="")
    else:
        print(value)
    return 0


def cmd_config_validate(settings: Settings, args: argparse.Namespace) -> int:
    # load_settings already ran validate_required; reaching here means it passed
    print(f"Config file: {settings.config_file or 'none (defaults and environment)'}")
    print("Configuration is valid")
    return 0


def cmd_config_set(args: argparse.Namespace) -> int:
    validate_config_key(args.key)
    validate_config_value(args.key, args.value)
    path = update_config_file(find_config_file(args.config), {args.key: args.value})
    print(f"Set {args.key} = {args.value} ({path})")
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    result = init_local_config(args.directory, force=args.force)

    print(f"Initialized fintrack in: {result.root}")
    if result.config_created:
        print(f"Config file: {result.config_file}")
    else:
        print(f"Config file already exists at {result.config_file}")
        print("Use 'fintrack config show' to view current settings")
    if result.ignore_created:
        print(f"Ignore file: {result.ignore_file}")

    print("\nNext steps:")
    print("1. Authenticate: fintrack bend login")
    print("2. Test the setup: fintrack bend check")
    print("3. Customize settings: fintrack config set bend.device_type CLI")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fintrack")
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--config", default=None, help="Config file (default: search ./.fintrack, ./configs, ., ~/.config/fintrack)")
    parser.add_argument("--log-http", action="store_true", help="Enable HTTP request/response logging")

    groups = parser.add_subparsers(dest="group")
    bend = groups.add_parser("bend", help="Bend financial service commands")
    commands = bend.add_subparsers(dest="command", required=True)

    commands.add_parser("check", help="Check Bend session status")

    login = commands.add_parser("login", help="Authenticate with Bend")
    login.add_argument("--phone", default=None, help="Phone number for OTP-based authentication (e.g., +1234567890)")
    login.add_argument("--otp", default=None, help="OTP code (prompted for when omitted)")
    login.add_argument("--otp-mode", action="store_true", help="Use OTP-based authentication instead of refresh token")
    login.add_argument("--channel", default="sms", help="OTP delivery channel. Default: sms")

    accounts = commands.add_parser("accounts", help="List all connected accounts")
    accounts.add_argument("-o", "--output", choices=["table", "json", "csv"], default="table")

    tx = commands.add_parser("transactions", help="Fetch transactions into the staging directory")
    tx.add_argument("--from", dest="date_from", default=None, help="Start date (YYYY-MM-DD or RFC3339)")
    tx.add_argument("--to", dest="date_to", default=None, help="End date (YYYY-MM-DD or RFC3339)")
    tx.add_argument("--days", type=int, default=30, help="Days to fetch when dates are not fully specified. Default: 30")
    tx.add_argument("--account-id", default=None, help="Specific account UUID")
    tx.add_argument("--time-filter", default=None, help="Predefined time filter (this_month, last_month, ...)")
    tx.add_argument("--count-by", default=None, help="Aggregation period (month, week, day)")
    tx.add_argument("--include-totals", action="store_true", help="Include aggregated totals")
    tx.add_argument("--category-id", default=None)
    tx.add_argument("--subcategory-id", default=None)
    tx.add_argument("--sort-by", default=DEFAULT_SORT_BY)
    tx.add_argument("--sort-order", default=DEFAULT_SORT_ORDER, choices=["ASC", "DESC"])
    tx.add_argument("--include-detailed", action="store_true", help="Include detailed search summary")
    tx.add_argument("--or-category", action="store_true", help="OR-combine category and subcategory")
    tx.add_argument("--limit", type=int, default=DEFAULT_PAGE_SIZE, help="Page size. Default: 50")
    tx.add_argument("--all", action="store_true", help="Follow the pagination cursor to the last page")
    tx.add_argument("--staging-dir", default=None, help="Staging directory (default: from config)")

    config = groups.add_parser("config", help="Configuration management")
    config_commands = config.add_subparsers(dest="command", required=True)
    config_commands.add_parser("show", help="Show the effective configuration as YAML")
    get = config_commands.add_parser("get", help="Get a configuration value (dot notation, e.g. bend.base_url)")
    get.add_argument("key")
    set_ = config_commands.add_parser("set", help="Set a configuration value in the config file")
    set_.add_argument("key")
    set_.add_argument("value")
    config_commands.add_parser("validate", help="Validate configuration syntax and values")

    init = groups.add_parser("init", help="Create .fintrack/config.yaml in a directory")
    init.add_argument("directory", nargs="?", default=".")
    init.add_argument("-f", "--force", action="store_true", help="Overwrite an existing .fintrack directory")

    return parser


COMMANDS = {
    ("bend", "check"): cmd_check,
    ("bend", "login"): cmd_login,
    ("bend", "accounts"): cmd_accounts,
    ("bend", "transactions"): cmd_transactions,
    ("config", "show"): cmd_config_show,
    ("config", "get"): cmd_config_get,
    ("config", "validate"): cmd_config_validate,
}

# commands that must work without a loadable configuration
FILE_COMMANDS = {
    ("config", "set"): cmd_config_set,
    ("init", None): cmd_init,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return 0

    if args.group is None:
        parser.print_help()
        return 1

    key = (args.group, getattr(args, "command", None))
    try:
        if key in FILE_COMMANDS:
            setup_logging()
            return FILE_COMMANDS[key](args)

        settings = load_settings(args.config)
        setup_logging(settings.log_level)
        if args.log_http or settings.log_http:
            logging.getLogger("fintrack.http").setLevel(logging.INFO)
        return COMMANDS[key](settings, args)
    except (FintrackError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
