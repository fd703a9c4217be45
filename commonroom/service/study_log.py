from __future__ import annotations

import asyncio
from typing import List, Optional, Protocol, Sequence, Tuple

from commonroom.logging import get_logger
from commonroom.service.access import POST, ChannelGrant
from commonroom.service.ai_gateway import LANGUAGES, AIGateway, AIGatewayError
from commonroom.service.ai_worker import ReplyJob, ReplyScheduler
from commonroom.service.errors import ValidationError
from commonroom.storage.models import AIResponse, Post

logger = get_logger(__name__)


class StudyLogStore(Protocol):
    def create_post(
        self,
        user_id: int,
        channel_id: int,
        content: str,
        *,
        image_url: Optional[str] = None,
        is_study_log: bool = False,
        ai_response_enabled: bool = False,
        target_language: Optional[str] = None,
        study_tags: Optional[Sequence[str]] = None,
    ) -> Post: ...

    def get_latest_ai_response(self, post_id: int) -> Optional[AIResponse]: ...


class StudyLogPipeline:
    """Creates study-log posts: tags first, then the post, then a queued reply.

    Tag extraction blocks the request but is bounded by ``tag_timeout`` and
    degrades to no tags. Reply generation is handed to the scheduler and
    never awaited.
    """

    def __init__(
        self,
        store: StudyLogStore,
        gateway: AIGateway,
        scheduler: ReplyScheduler,
        *,
        tag_timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.scheduler = scheduler
        self.tag_timeout = tag_timeout

    async def extract_tags(self, content: str) -> List[str]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.gateway.extract_tags, content),
                timeout=self.tag_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("study_tags_timeout", timeout=self.tag_timeout)
        except AIGatewayError as exc:
            logger.warning("study_tags_failed", reason=exc.kind, error=str(exc))
        return []

    async def create_study_post(
        self,
        grant: ChannelGrant,
        content: str,
        *,
        ai_response_enabled: bool = False,
        target_language: str = "English",
        image_url: Optional[str] = None,
    ) -> Tuple[Post, List[str]]:
        if grant.action != POST:
            raise ValueError("study posts require a post grant")
        if not content or not content.strip():
            raise ValidationError("content is required")
        if target_language not in LANGUAGES:
            raise ValidationError(
                "unsupported target language",
                detail={"target_language": target_language, "allowed": list(LANGUAGES)},
            )

        tags = await self.extract_tags(content)
        post = self.store.create_post(
            grant.identity.user_id,
            grant.channel.id,
            content,
            image_url=image_url,
            is_study_log=True,
            ai_response_enabled=ai_response_enabled,
            target_language=target_language,
            study_tags=tags,
        )
        logger.info(
            "study_post_created",
            post_id=post.id,
            channel_id=post.channel_id,
            tag_count=len(tags),
            ai_response_enabled=ai_response_enabled,
        )
        if ai_response_enabled:
            self.scheduler.submit(
                ReplyJob(post_id=post.id, content=content, target_language=target_language)
            )
        return post, tags

    def latest_ai_response(self, post_id: int) -> Optional[AIResponse]:
        return self.store.get_latest_ai_response(post_id)
