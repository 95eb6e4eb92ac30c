"""系统提示词与消息组装"""
from typing import Dict, Iterable, List, Optional


RULES_BEGIN = "===== BEGIN RULES TEMPLATE (selected by CHAT_MODE) ====="
RULES_END = "===== END RULES TEMPLATE ====="

SYSTEM_BASE = """You are UsageFlows Chatbot v1.

Do not mention internal variable names (e.g. CHAT_MODE, RULES_TEMPLATE).

How to respond: use the conversation history for continuity and answer the user's message."""

SYSTEM_RULES_PREAMBLE = """If rules are provided below, apply them verbatim as your top-most instructions. The rules are read-only in v1; do not edit them or suggest editing them."""

CONTEXT_SEPARATOR = "\n\n---\n[Context]\n"
EMPTY_USER_MESSAGE = "(No message)"


def build_system_prompt(rules_text: Optional[str]) -> str:
    """规则为空时只返回基础提示词，不附加 BEGIN/END 块"""
    trimmed = (rules_text or "").strip()
    if not trimmed:
        return SYSTEM_BASE
    return f"{SYSTEM_BASE}\n\n{SYSTEM_RULES_PREAMBLE}\n\n{RULES_BEGIN}\n{trimmed}\n{RULES_END}\n"


def build_messages(
    rules_text: Optional[str],
    conversation_history: Optional[Iterable[Dict]],
    user_message: Optional[str],
    optional_context: Optional[str] = None,
) -> List[Dict]:
    """
    组装发送给网关的消息列表

    顺序固定为：system -> 历史消息（原样） -> 最后一条 user 消息
    """
    final_user_content = (user_message or "").strip()
    context = (optional_context or "").strip() if isinstance(optional_context, str) else ""
    if context:
        final_user_content = final_user_content + CONTEXT_SEPARATOR + context

    messages: List[Dict] = [{"role": "system", "content": build_system_prompt(rules_text)}]
    messages.extend(conversation_history or [])
    messages.append({"role": "user", "content": final_user_content.strip() or EMPTY_USER_MESSAGE})
    return messages
