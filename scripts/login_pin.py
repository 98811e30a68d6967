import argparse
import asyncio
import getpass
import logging
import time

from donorpin.auth_flow import NO_CREDENTIAL, build_context
from donorpin.config import load_config
from donorpin.db import connect, init_db
from donorpin.identity import FileIdentityCache


async def run(args) -> int:
    cfg = load_config(args.config)
    logging.basicConfig(level=cfg.log_level)
    conn = connect(cfg.db_path)
    init_db(conn)

    ctx = build_context(cfg, conn, identity_cache=FileIdentityCache(args.identity_file))

    status = await ctx.status()
    if status.state == NO_CREDENTIAL:
        print("[ACCESS DENIED] reason=no_credential (run scripts/setup_pin.py)")
        return 1

    pin = getpass.getpass("Enter PIN: ").strip()
    result = await ctx.authenticate(pin)

    if result.ok:
        print(f"[ACCESS GRANTED] subject={result.subject_id} reason={result.reason}")
        return 0

    if result.lockout_expires_at:
        minutes = max(1, int((result.lockout_expires_at - time.time() * 1000) // 60000) + 1)
        print(f"[ACCESS DENIED] reason={result.reason} locked_for_min={minutes} (use scripts/reset_pin.py)")
    elif result.attempts_remaining is not None:
        print(f"[ACCESS DENIED] reason={result.reason} attempts_remaining={result.attempts_remaining}")
    else:
        print(f"[ACCESS DENIED] reason={result.reason}")
    return 1


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--identity-file", default="data/identity.yaml")
    raise SystemExit(asyncio.run(run(parser.parse_args())))


if __name__ == "__main__":
    main()
