from telegram import Update

from geoclock import config


def is_worker(user_id: int | None, worker_chat_id: int | None = None) -> bool:
    expected = config.WORKER_CHAT_ID if worker_chat_id is None else worker_chat_id
    if not expected or user_id is None:
        return False
    return int(user_id) == int(expected)


async def ensure_worker(update: Update, logger) -> bool:
    user = update.effective_user
    chat = update.effective_chat
    if not user or not chat:
        return False

    if not is_worker(user.id):
        logger.info("BLOCKED_ACCESS user=%s reason=not_worker", user.id)
        if update.effective_message:
            await update.effective_message.reply_text("This bot is bound to another worker.")
        return False

    return True
