import argparse
import asyncio
import logging

from donorpin.auth_flow import build_context
from donorpin.config import load_config
from donorpin.db import connect, init_db
from donorpin.identity import CachedIdentity, FileIdentityCache


async def run(args) -> int:
    cfg = load_config(args.config)
    logging.basicConfig(level=cfg.log_level)
    conn = connect(cfg.db_path)
    init_db(conn)

    ctx = build_context(cfg, conn, identity_cache=FileIdentityCache(args.identity_file))
    if not ctx.has_cached_identity():
        print("PIN RESET FAILED: no cached identity on this device, contact support")
        return 1

    claim = CachedIdentity(
        first_name=input("First name: "),
        last_name=input("Last name: "),
        date_of_birth=input("Date of birth (YYYY-MM-DD): "),
        external_id=input("Donor ID: "),
    )
    result = await ctx.reset(claim)

    if result.ok:
        print("PIN reset: run scripts/setup_pin.py to choose a new PIN")
        return 0
    if result.reason == "not_persisted":
        print("PIN RESET FAILED: the stored PIN could not be removed, try again")
        return 1
    print("PIN RESET FAILED: the information provided does not match our records")
    return 1


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--identity-file", default="data/identity.yaml")
    raise SystemExit(asyncio.run(run(parser.parse_args())))


if __name__ == "__main__":
    main()
