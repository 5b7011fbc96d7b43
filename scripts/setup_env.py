#!/usr/bin/env python3
"""交互式生成 .env 配置文件

使用方式：
    python scripts/setup_env.py

会引导用户填写配置项（直接回车使用默认值），生成 .env 文件。
"""
import os

# 项目根目录
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
ENV_FILE = os.path.join(PROJECT_ROOT, ".env")


# 配置项定义：(env_key, 描述, 默认值)
CONFIG_ITEMS = [
    # === 数据库 ===
    ("DATABASE_URL", "数据库连接地址", "sqlite:///data/direct.db"),

    # === 日志 ===
    ("LOG_LEVEL", "日志级别", "INFO"),

    # === 事件回放 ===
    ("INGEST_WEBHOOK_LOG_DEPTH", "每次回放读取的 webhook 日志条数", "1000"),
    ("INGEST_RECORDS_LOG_DEPTH", "每次回放读取的 records 日志条数", "10000"),
    ("REPLAY_INTERVAL_MINUTES", "定时回放间隔（分钟）", "30"),
    ("REPLAY_LOOKBACK_DAYS", "定时回放窗口（天）", "1"),
    ("TIMEZONE_NAME", "调度时区", "Europe/Kyiv"),

    # === 缓存 / 租约 ===
    ("METRICS_LEASE_TTL_SECONDS", "指标回填租约有效期（秒）", "300"),
]

SECTION_NAMES = {
    "DATABASE": "# === 数据库配置 ===",
    "LOG": "# === 日志配置 ===",
    "INGEST": "# === 事件回放配置 ===",
    "REPLAY": "# === 事件回放配置 ===",
    "TIMEZONE": "# === 事件回放配置 ===",
    "METRICS": "# === 缓存 / 租约配置 ===",
}


def main():
    print()
    print("=" * 60)
    print("  Direct Funnel 配置向导")
    print("  生成 .env 配置文件")
    print("=" * 60)
    print()

    # 检查是否已存在 .env
    if os.path.exists(ENV_FILE):
        print(f"⚠️  检测到已有 .env 文件: {ENV_FILE}")
        choice = input("是否覆盖？(y/N): ").strip().lower()
        if choice != "y":
            print("已取消。")
            return
        print()

    env_lines = [
        "# Direct Funnel 配置文件",
        "# 由 scripts/setup_env.py 自动生成",
    ]

    for key, desc, default in CONFIG_ITEMS:
        header = SECTION_NAMES.get(key.split("_")[0], "# === 其他配置 ===")
        # 避免重复写同一个 section header
        if header not in env_lines:
            env_lines.append("")
            env_lines.append(header)

        print(f"📝 {desc}")
        value = input(f"  {key}= (默认: {default}): ").strip() or default
        env_lines.append(f"{key}={value}")
        print()

    with open(ENV_FILE, "w", encoding="utf-8") as f:
        f.write("\n".join(env_lines) + "\n")

    print("=" * 60)
    print(f"  ✅ 配置文件已生成: {ENV_FILE}")
    print()
    print("  初始化数据库：")
    print("    python scripts/init_db.py")
    print()
    print("  启动定时回放：")
    print("    python app.py")
    print("=" * 60)


if __name__ == "__main__":
    main()
