"""Post-commit progression broadcasts over Redis pub/sub.

Publishing is best-effort: it runs only after the transaction committed and
a failure never affects the caller.
"""

from __future__ import annotations

import json
import logging

logger = logging.getLogger(__name__)

CHANNEL_TASK_COMPLETED = "pubsub:task_completed"
CHANNEL_LEVEL_UP = "pubsub:level_up"
CHANNEL_SKILL_UNLOCKED = "pubsub:skill_unlocked"
CHANNEL_ACHIEVEMENT_UNLOCKED = "pubsub:achievement_unlocked"


async def publish(redis: object | None, channel: str, payload: dict) -> None:
    if redis is None:
        return
    try:
        await redis.publish(channel, json.dumps(payload, default=str))  # type: ignore[union-attr]
    except Exception:
        logger.warning("Failed to publish %s broadcast", channel, exc_info=True)


async def publish_completion(
    redis: object | None,
    user_id: str,
    task_ids: list[str],
    xp_awarded: int,
    old_level: int,
    new_level: int,
    unlocked_skill_ids: list[str],
    achievement_ids: list[str],
) -> None:
    """Broadcast everything a committed completion produced."""
    if redis is None:
        return

    await publish(redis, CHANNEL_TASK_COMPLETED, {
        "user_id": user_id,
        "task_ids": task_ids,
        "xp_awarded": xp_awarded,
    })
    if new_level > old_level:
        await publish(redis, CHANNEL_LEVEL_UP, {
            "user_id": user_id,
            "old_level": old_level,
            "new_level": new_level,
        })
    for skill_id in unlocked_skill_ids:
        await publish(redis, CHANNEL_SKILL_UNLOCKED, {"user_id": user_id, "skill_id": skill_id})
    for achievement_id in achievement_ids:
        await publish(redis, CHANNEL_ACHIEVEMENT_UNLOCKED, {
            "user_id": user_id,
            "achievement_id": achievement_id,
        })
