import argparse
import json
import sqlite3

import yaml

from lottery import DEFAULT_WEIGHTS


def load_db_path(config_path: str = "config.yaml") -> str:
    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f) or {}
            return config.get("database", {}).get("db_path", "giveaways.db")
    except FileNotFoundError:
        return "giveaways.db"


def init_db(db_path):
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS broadcaster_profiles (
            broadcaster_id TEXT PRIMARY KEY,
            broadcaster_name TEXT,
            access_token TEXT,
            is_looping INTEGER DEFAULT 0,
            current_prize TEXT,
            current_command TEXT,
            current_duration INTEGER,
            current_message TEXT,
            active_giveaway_id TEXT,
            weights TEXT
        )
    ''')
    conn.commit()
    conn.close()


def _ensure(cursor, broadcaster_id):
    cursor.execute(
        "INSERT OR IGNORE INTO broadcaster_profiles (broadcaster_id, weights) VALUES (?, ?)",
        (broadcaster_id, json.dumps(DEFAULT_WEIGHTS)),
    )


def register(db_path, broadcaster_id, name, token=None):
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()
    _ensure(cursor, broadcaster_id)
    cursor.execute("UPDATE broadcaster_profiles SET broadcaster_name = ? WHERE broadcaster_id = ?", (name.lower(), broadcaster_id))
    if token:
        cursor.execute("UPDATE broadcaster_profiles SET access_token = ? WHERE broadcaster_id = ?", (token, broadcaster_id))
    conn.commit()
    print(f"Broadcaster registered: {name} ({broadcaster_id})")
    conn.close()


def set_weight(db_path, broadcaster_id, category, value):
    if category not in DEFAULT_WEIGHTS:
        print(f"Unknown category: {category}. Known: {', '.join(DEFAULT_WEIGHTS)}")
        return False
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()
    _ensure(cursor, broadcaster_id)
    cursor.execute("SELECT weights FROM broadcaster_profiles WHERE broadcaster_id = ?", (broadcaster_id,))
    row = cursor.fetchone()
    weights = json.loads(row[0]) if row and row[0] else dict(DEFAULT_WEIGHTS)
    weights[category] = max(0, int(value))
    cursor.execute("UPDATE broadcaster_profiles SET weights = ? WHERE broadcaster_id = ?", (json.dumps(weights), broadcaster_id))
    conn.commit()
    print(f"Weight {category} = {weights[category]} for {broadcaster_id}")
    conn.close()
    return True


def stop_loop(db_path, broadcaster_id):
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()
    cursor.execute("UPDATE broadcaster_profiles SET is_looping = 0 WHERE broadcaster_id = ?", (broadcaster_id,))
    changed = cursor.rowcount
    conn.commit()
    conn.close()
    if changed:
        print(f"Loop disabled for {broadcaster_id}")
    else:
        print(f"Broadcaster {broadcaster_id} not found.")
    return bool(changed)


def list_profiles(db_path):
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()
    cursor.execute("SELECT broadcaster_id, broadcaster_name, is_looping, current_command, active_giveaway_id, weights FROM broadcaster_profiles")
    rows = cursor.fetchall()

    print(f"{'ID':<12} {'Name':<20} {'Loop':<5} {'Command':<12} {'Active':<15} {'Weights'}")
    print("-" * 80)
    for row in rows:
        weights = json.loads(row[5]) if row[5] else {}
        weights_str = " ".join(f"{k}={v}" for k, v in weights.items())
        print(f"{row[0]:<12} {row[1] or '':<20} {row[2]:<5} {row[3] or '':<12} {row[4] or '-':<15} {weights_str}")
    conn.close()
    return rows


def main():
    parser = argparse.ArgumentParser(description="Manage giveaway broadcaster profiles")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    parser_register = subparsers.add_parser("register", help="Register a broadcaster")
    parser_register.add_argument("broadcaster_id", help="Twitch user id of the broadcaster")
    parser_register.add_argument("name", help="Twitch login of the broadcaster")
    parser_register.add_argument("--token", help="Broadcaster access token (fallback announcements)")

    parser_weight = subparsers.add_parser("set_weight", help="Set a lottery weight")
    parser_weight.add_argument("broadcaster_id", help="Twitch user id of the broadcaster")
    parser_weight.add_argument("category", help="Weight category (t1, t2, t3, broadcaster, moderator, vip, follower, viewer)")
    parser_weight.add_argument("value", type=int, help="Tickets per entry in this category")

    parser_stop = subparsers.add_parser("stop_loop", help="Disable giveaway looping")
    parser_stop.add_argument("broadcaster_id", help="Twitch user id of the broadcaster")

    subparsers.add_parser("list_profiles", help="List all broadcaster profiles")

    args = parser.parse_args()

    db_path = load_db_path(args.config)
    init_db(db_path)

    if args.command == "register":
        register(db_path, args.broadcaster_id, args.name, args.token)
    elif args.command == "set_weight":
        set_weight(db_path, args.broadcaster_id, args.category, args.value)
    elif args.command == "stop_loop":
        stop_loop(db_path, args.broadcaster_id)
    elif args.command == "list_profiles":
        list_profiles(db_path)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
