"""
Points Engine — Recommendation Scorer
======================================

What:  Ranks available listings for a user; trending listings for everyone else.
Why:   Helps readers find books worth their points. Best-effort and read-only:
       it never writes, and a failure yields an empty list, not an error page.
How:   Bounded candidate set (newest 50 available listings not owned by the
       user) scored against an interest profile built from the user's owned
       and requested books.

Scoring (per candidate):
    +3.0   author appears in the profile
    +1.0   per title keyword shared with the profile
    +0.25  per pending/accepted request on the listing (capped at 8)

    Only candidates with an author or keyword match count as personalized.
    If none match, the result falls back to trending: request count desc,
    then newest first.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from points_engine.models.book import Book, BookRequest
from points_engine.models.enums import RequestStatus
from points_engine.schemas.book import BookResponse, RecommendationItem, RecommendationList

logger = logging.getLogger(__name__)

CANDIDATE_LIMIT = 50
AUTHOR_WEIGHT = 3.0
KEYWORD_WEIGHT = 1.0
DEMAND_WEIGHT = 0.25
DEMAND_CAP = 8

STOPWORDS = frozenset({
    "the", "and", "for", "with", "from", "into", "of", "a", "an", "in", "on",
    "to", "at", "by", "book", "volume", "edition", "part",
})

_WORD = re.compile(r"[a-z0-9]+")


def title_keywords(title: str) -> Set[str]:
    return {w for w in _WORD.findall(title.lower()) if len(w) >= 3 and w not in STOPWORDS}


class RecommendationService:
    async def recommend(
        self, session: AsyncSession, user_id: Optional[str], limit: int = 6
    ) -> RecommendationList:
        """Never raises: any failure is logged and yields an empty list."""
        limit = max(1, min(limit, 20))
        try:
            if user_id is None:
                return await self._trending(session, limit)
            return await self._personalized(session, user_id, limit)
        except Exception as e:
            logger.warning(
                "Recommendations unavailable for user %s: %s", user_id, str(e), exc_info=True
            )
            return RecommendationList(recommendations=[], is_personalized=False)

    async def trending(self, session: AsyncSession, limit: int = 6) -> RecommendationList:
        return await self.recommend(session, None, limit)

    # ── Internals ─────────────────────────────────────────────────────────
    async def _candidates(
        self, session: AsyncSession, exclude_owner: Optional[str], exclude_ids: Iterable = ()
    ) -> List[Book]:
        query = select(Book).where(Book.is_available.is_(True))
        if exclude_owner is not None:
            query = query.where(Book.owner_id != exclude_owner)
        exclude_ids = list(exclude_ids)
        if exclude_ids:
            query = query.where(Book.id.not_in(exclude_ids))
        query = query.order_by(Book.created_at.desc(), Book.id).limit(CANDIDATE_LIMIT)
        return list((await session.execute(query)).scalars().all())

    async def _request_counts(self, session: AsyncSession, books: List[Book]) -> Dict:
        if not books:
            return {}
        rows = await session.execute(
            select(BookRequest.book_id, func.count())
            .where(
                BookRequest.book_id.in_([b.id for b in books]),
                BookRequest.status.in_([RequestStatus.PENDING.value, RequestStatus.ACCEPTED.value]),
            )
            .group_by(BookRequest.book_id)
        )
        return {book_id: count for book_id, count in rows.all()}

    @staticmethod
    def _rank_trending(books: List[Book], counts: Dict, limit: int) -> List[RecommendationItem]:
        ranked = sorted(
            books,
            key=lambda b: (-counts.get(b.id, 0), -b.created_at.timestamp(), str(b.id)),
        )
        items = []
        for book in ranked[:limit]:
            n = counts.get(book.id, 0)
            items.append(RecommendationItem(
                book=BookResponse.model_validate(book),
                score=float(n),
                reason=f"Requested by {n} reader(s)" if n else "Recently listed",
            ))
        return items

    async def _trending(self, session: AsyncSession, limit: int) -> RecommendationList:
        books = await self._candidates(session, exclude_owner=None)
        counts = await self._request_counts(session, books)
        return RecommendationList(
            recommendations=self._rank_trending(books, counts, limit),
            is_personalized=False,
        )

    async def _personalized(self, session: AsyncSession, user_id: str, limit: int) -> RecommendationList:
        owned = (
            await session.execute(select(Book.title, Book.author).where(Book.owner_id == user_id))
        ).all()
        requested = (
            await session.execute(
                select(Book.id, Book.title, Book.author)
                .join(BookRequest, BookRequest.book_id == Book.id)
                .where(BookRequest.requester_id == user_id)
            )
        ).all()

        authors = {a.strip().lower() for _, a in owned} | {a.strip().lower() for _, _, a in requested}
        keywords: Set[str] = set()
        for title, _ in owned:
            keywords |= title_keywords(title)
        for _, title, _ in requested:
            keywords |= title_keywords(title)

        books = await self._candidates(
            session, exclude_owner=user_id, exclude_ids={book_id for book_id, _, _ in requested}
        )
        counts = await self._request_counts(session, books)

        if not authors and not keywords:
            return RecommendationList(
                recommendations=self._rank_trending(books, counts, limit),
                is_personalized=False,
            )

        scored = []
        for book in books:
            author_hit = book.author.strip().lower() in authors
            shared = title_keywords(book.title) & keywords
            if not author_hit and not shared:
                continue
            score = (
                (AUTHOR_WEIGHT if author_hit else 0.0)
                + KEYWORD_WEIGHT * len(shared)
                + DEMAND_WEIGHT * min(counts.get(book.id, 0), DEMAND_CAP)
            )
            if author_hit:
                reason = f"More by {book.author}"
            else:
                reason = "Similar to books you like: " + ", ".join(sorted(shared)[:3])
            scored.append((score, book, reason))

        if not scored:
            return RecommendationList(
                recommendations=self._rank_trending(books, counts, limit),
                is_personalized=False,
            )

        scored.sort(key=lambda s: (-s[0], -s[1].created_at.timestamp(), str(s[1].id)))
        return RecommendationList(
            recommendations=[
                RecommendationItem(
                    book=BookResponse.model_validate(book), score=round(score, 2), reason=reason
                )
                for score, book, reason in scored[:limit]
            ],
            is_personalized=True,
        )
