# SPDX-License-Identifier: GPL-3.0-or-later
#!/usr/bin/env python3
"""
goal: environment setup script for ConnSentry. writes a .env file listing every CONNSENTRY_* setting
      with its default (commented out) and creates the data folder, if they don't exist yet.
      makes it easy for new devs to see what can be tuned without reading the config loader.
"""

from pathlib import Path

# setting name -> default, in the order they appear in the generated file
ENV_DEFAULTS = {
    "POLL_INTERVAL_MS": "2000",
    "RETENTION_MAX_AGE_MIN": "30",
    "RETENTION_INTERVAL_MIN": "5",
    "RETENTION_INITIAL_DELAY_SEC": "60",
    "DB_PATH": "data/network_logs.db",
    "GEO_DB_PATH": "data/GeoLite2-Country.mmdb",
    "GEO_TIMEOUT_SEC": "3",
    "POLICY_PATH": "data/suspicion_policy.json",
    "HOST": "127.0.0.1",
    "PORT": "8766",
    "LOG_LEVEL": "WARNING",
}


def render_env() -> str:
    lines = [
        "# =========================================",
        "# ConnSentry Environment Variables",
        "# =========================================",
        "# every setting is optional; uncomment a line to override data/config.json",
        "",
    ]
    for key, default in ENV_DEFAULTS.items():
        lines.append(f"# CONNSENTRY_{key}={default}")
    return "\n".join(lines) + "\n"


def setup_env(root: Path = Path(".")) -> bool:
    """
    create .env and data/ under root. an existing .env is left alone, the dev might have custom values.
    returns True if a new .env was written.
    """
    (root / "data").mkdir(parents=True, exist_ok=True)

    env_file = root / ".env"
    if env_file.exists():
        print("[OK] .env file already exists")
        print("  Skipping setup. Delete .env if you want to regenerate.")
        return False

    env_file.write_text(render_env(), encoding="utf-8")
    print("[OK] Created .env with the default settings commented out")
    return True


if __name__ == "__main__":
    # run the setup when script is executed directly
    setup_env()
