import argparse
import asyncio
import getpass
import logging

from donorpin.auth_flow import build_context
from donorpin.config import load_config
from donorpin.db import connect, init_db


async def run(args) -> int:
    cfg = load_config(args.config)
    logging.basicConfig(level=cfg.log_level)
    conn = connect(cfg.db_path)
    init_db(conn)

    ctx = build_context(cfg, conn)

    old_pin = getpass.getpass("Enter current PIN: ").strip()
    unlocked = await ctx.authenticate(old_pin, session_active=True)
    if not unlocked.ok:
        print(f"PIN CHANGE FAILED: reason={unlocked.reason}")
        return 1

    new_pin1 = getpass.getpass("Enter new PIN: ").strip()
    new_pin2 = getpass.getpass("Re-enter new PIN: ").strip()
    result = await ctx.change(old_pin, new_pin1, new_pin2)

    if result.ok:
        print(f"PIN changed: subject={result.subject_id}")
        return 0
    for e in result.errors:
        print(f"[error] {e}")
    print(f"PIN CHANGE FAILED: reason={result.reason}")
    return 1


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default="config.yaml")
    raise SystemExit(asyncio.run(run(parser.parse_args())))


if __name__ == "__main__":
    main()
