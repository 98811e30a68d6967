import argparse

from donorpin.config import load_config
from donorpin.db import connect, init_db, read_envelope, recent_pin_events


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--events", type=int, default=0, help="print the N most recent pin audit events")
    args = parser.parse_args()

    cfg = load_config(args.config)
    conn = connect(cfg.db_path)
    init_db(conn)
    print(f"DB initialized: {cfg.db_path}")

    env = read_envelope(conn)
    if env is None:
        print("pin envelope: none")
    else:
        print(f"pin envelope: stored_at={env.stored_at} expires_at={env.expires_at} schema={env.schema_version}")

    for e in recent_pin_events(conn, limit=args.events) if args.events > 0 else []:
        print(f"{e['ts']} {e['action']:<13} {e['decision']:<5} subject={e['subject_id']} {e['reason']}")


if __name__ == "__main__":
    main()
