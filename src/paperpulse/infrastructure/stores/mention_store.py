from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from paperpulse.infrastructure.stores.models import Base, NewsMentionModel, SocialMentionModel
from paperpulse.infrastructure.stores.sqlalchemy_db import SessionProvider, get_db_url


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MentionStore:
    """Social posts and news articles that mention a paper."""

    def __init__(self, db_url: Optional[str] = None, *, auto_create_schema: bool = True):
        self.db_url = db_url or get_db_url()
        self._provider = SessionProvider(self.db_url)
        if auto_create_schema:
            Base.metadata.create_all(self._provider.engine)

    def add_social_mention(self, paper_id: int, mention: Dict[str, Any]) -> bool:
        """Insert a post; False if (platform, external_id) was already stored."""
        row = SocialMentionModel(
            paper_id=int(paper_id),
            platform=str(mention["platform"]),
            external_id=str(mention["external_id"]),
            author_handle=str(mention.get("author_handle") or ""),
            author_name=str(mention.get("author_name") or ""),
            content=str(mention.get("content") or ""),
            url=str(mention.get("url") or ""),
            likes=int(mention.get("likes") or 0),
            reposts=int(mention.get("reposts") or 0),
            replies=int(mention.get("replies") or 0),
            content_hash=str(mention.get("content_hash") or ""),
            posted_at=mention.get("posted_at"),
            created_at=_utcnow(),
        )
        with self._provider.session() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def add_news_mention(self, paper_id: int, article: Dict[str, Any]) -> bool:
        """Insert an article; False if its url hash was already stored."""
        row = NewsMentionModel(
            paper_id=int(paper_id),
            title=str(article.get("title") or ""),
            snippet=str(article.get("snippet") or ""),
            url=str(article.get("url") or ""),
            source_name=str(article.get("source") or ""),
            published=article.get("date"),
            url_hash=str(article["url_hash"]),
            created_at=_utcnow(),
        )
        with self._provider.session() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def count_social(self, paper_id: int, platform: Optional[str] = None) -> int:
        stmt = select(func.count(SocialMentionModel.id)).where(
            SocialMentionModel.paper_id == int(paper_id)
        )
        if platform:
            stmt = stmt.where(SocialMentionModel.platform == platform)
        with self._provider.session() as session:
            return int(session.execute(stmt).scalar_one())

    def list_news(self, paper_id: int) -> List[Dict[str, Any]]:
        with self._provider.session() as session:
            rows = session.execute(
                select(NewsMentionModel)
                .where(NewsMentionModel.paper_id == int(paper_id))
                .order_by(NewsMentionModel.id)
            ).scalars()
            return [
                {
                    "title": r.title,
                    "url": r.url,
                    "source": r.source_name,
                    "date": r.published,
                    "url_hash": r.url_hash,
                }
                for r in rows
            ]
