"""初始化对话历史数据库（建表 + 索引）"""
import asyncio
import sys
from pathlib import Path

# 添加项目根目录到Python路径
sys.path.insert(0, str(Path(__file__).parent.parent))

from chat_relay.config import settings
from chat_relay.database import close_db, get_chat_store


async def main() -> int:
    store = get_chat_store()
    if not store.is_configured:
        print(f"⚠️ 未配置持久化（CONNECTION_TYPE={settings.CONNECTION_TYPE}），跳过建表")
        return 1

    try:
        await store.ensure_schema()
        print(f"✅ chat_sessions / chat_messages 表已就绪（{store.dialect_label}）")
    finally:
        await close_db()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
