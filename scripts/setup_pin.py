import argparse
import asyncio
import getpass
import logging

from donorpin.auth_flow import build_context
from donorpin.config import load_config
from donorpin.db import connect, init_db
from donorpin.identity import FileIdentityCache
from donorpin.security.pin_policy import check_pin


async def run(args) -> int:
    cfg = load_config(args.config)
    logging.basicConfig(level=cfg.log_level)
    conn = connect(cfg.db_path)
    init_db(conn)

    ctx = build_context(cfg, conn, identity_cache=FileIdentityCache(args.identity_file))

    pin = getpass.getpass(f"Choose a {cfg.policy.pin_length}-digit PIN: ").strip()
    feedback = check_pin(pin, cfg.policy)
    print(f"[strength] {feedback.label} ({feedback.score}/100)")
    for w in feedback.validation.warnings:
        print(f"[warning] {w}")

    confirm = getpass.getpass("Confirm PIN: ").strip()
    result = await ctx.setup(pin, confirm, subject_id=args.subject_id)

    if result.ok:
        print(f"PIN SETUP OK: subject={result.subject_id}")
        return 0
    for e in result.errors:
        print(f"[error] {e}")
    print(f"PIN SETUP FAILED: reason={result.reason}")
    return 1


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--subject-id", default=None)
    parser.add_argument("--identity-file", default="data/identity.yaml")
    raise SystemExit(asyncio.run(run(parser.parse_args())))


if __name__ == "__main__":
    main()
