"""
In-memory stand-ins for Redis/arq, the LLM endpoint and the paper source.

Only the commands the application issues are implemented.
"""

from __future__ import annotations

import fnmatch
import json
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from paperpulse.domain.llm import ChatCompletion
from paperpulse.domain.paper import FetchResult, PaperAuthor, PaperRecord


@dataclass
class FakeJob:
    job_id: str


class FakePubSub:
    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self.channels: List[str] = []

    async def subscribe(self, channel: str) -> None:
        self.channels.append(channel)

    async def unsubscribe(self, channel: str) -> None:
        if channel in self.channels:
            self.channels.remove(channel)

    async def aclose(self) -> None:
        pass


class FakeRedis:
    """Dict-backed subset of redis.asyncio.Redis plus arq's enqueue_job."""

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.expiry: Dict[str, int] = {}
        self.published: List[tuple] = []
        self.enqueued: List[Dict[str, Any]] = []
        self.closed = False

    # strings
    async def get(self, key):
        value = self.data.get(key)
        return value if isinstance(value, str) else None

    async def set(self, key, value, nx: bool = False, px: Optional[int] = None):
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        if px is not None:
            self.expiry[key] = px
        return True

    async def mget(self, keys):
        return [await self.get(k) for k in keys]

    async def mset(self, mapping):
        for k, v in mapping.items():
            self.data[k] = str(v)
        return True

    async def exists(self, *keys):
        return sum(1 for k in keys if k in self.data)

    async def incr(self, key):
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    async def decr(self, key):
        value = int(self.data.get(key, 0)) - 1
        self.data[key] = str(value)
        return value

    async def expire(self, key, seconds):
        self.expiry[key] = seconds * 1000
        return True

    async def delete(self, *keys):
        removed = 0
        for k in keys:
            if k in self.data:
                del self.data[k]
                removed += 1
        return removed

    async def keys(self, pattern="*"):
        return [k for k in self.data if fnmatch.fnmatch(k, pattern)]

    # hashes
    async def hincrby(self, key, field, amount=1):
        h = self.data.setdefault(key, {})
        h[field] = int(h.get(field, 0)) + amount
        return h[field]

    async def hdel(self, key, *fields):
        h = self.data.get(key) or {}
        removed = sum(1 for f in fields if h.pop(f, None) is not None)
        if key in self.data and not h:
            del self.data[key]
        return removed

    async def hget(self, key, field):
        return (self.data.get(key) or {}).get(field)

    # lists
    async def lpush(self, key, *values):
        lst = self.data.setdefault(key, [])
        for v in values:
            lst.insert(0, v)
        return len(lst)

    async def ltrim(self, key, start, end):
        lst = self.data.get(key, [])
        self.data[key] = lst[start : end + 1 if end >= 0 else None]
        return True

    async def lrange(self, key, start, end):
        lst = self.data.get(key, [])
        return lst[start : end + 1 if end >= 0 else None]

    # sorted sets (arq queues)
    async def zadd(self, key, mapping):
        z = self.data.setdefault(key, {})
        z.update(mapping)
        return len(mapping)

    async def zrange(self, key, start, end):
        z = self.data.get(key) or {}
        members = sorted(z, key=lambda m: z[m])
        return members[start : end + 1 if end >= 0 else None]

    async def zcard(self, key):
        return len(self.data.get(key) or {})

    # scripting / pubsub
    async def eval(self, script, numkeys, key, token):
        if self.data.get(key) == token:
            del self.data[key]
            return 1
        return 0

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 1

    def pubsub(self, ignore_subscribe_messages: bool = False):
        return FakePubSub(self)

    async def aclose(self):
        self.closed = True

    # arq
    async def enqueue_job(self, function, *args, _job_id=None, _queue_name="arq:queue", _defer_by=None, **kwargs):
        job_id = _job_id or uuid.uuid4().hex
        if f"arq:job:{job_id}" in self.data:
            return None
        self.data[f"arq:job:{job_id}"] = json.dumps({"function": function, "args": list(args)})
        await self.zadd(_queue_name, {job_id: len(self.enqueued)})
        self.enqueued.append(
            {
                "function": function,
                "args": list(args),
                "job_id": job_id,
                "queue": _queue_name,
                "defer_by": _defer_by,
            }
        )
        return FakeJob(job_id)

    def jobs_on(self, queue_name: str) -> List[Dict[str, Any]]:
        return [j for j in self.enqueued if j["queue"] == queue_name]


class FakeLLM:
    """Returns queued replies in order; the last reply repeats."""

    def __init__(self, *replies: Any, model: str = "test/model", tokens: int = 1000, configured: bool = True):
        self.replies = list(replies)
        self.model = model
        self.tokens = tokens
        self.configured = configured
        self.calls: List[Dict[str, Any]] = []

    def is_configured(self) -> bool:
        return self.configured

    async def complete(self, *, system, user, model=None, temperature=0.0, max_tokens=4000) -> ChatCompletion:
        self.calls.append({"system": system, "user": user, "model": model, "max_tokens": max_tokens})
        reply = self.replies[min(len(self.calls), len(self.replies)) - 1]
        if isinstance(reply, Exception):
            raise reply
        content = reply if isinstance(reply, str) else json.dumps(reply)
        return ChatCompletion(content=content, model=model or self.model, tokens_used=self.tokens)

    async def close(self) -> None:
        pass


def make_record(external_id: str, *, categories: Optional[List[str]] = None, primary: str = "", day: Optional[date] = None) -> PaperRecord:
    published = datetime.combine(day or date(2024, 1, 15), datetime.min.time(), tzinfo=timezone.utc)
    return PaperRecord(
        external_id=external_id,
        title=f"Paper {external_id}",
        abstract="We propose a method. It improves accuracy by 12%. It runs on one GPU.",
        authors=[PaperAuthor(name="Ada Lovelace")],
        categories=list(categories or []),
        primary_category=primary,
        published_at=published,
        updated_at=published,
        pdf_url=f"https://arxiv.org/pdf/{external_id}.pdf",
    )


class FakePaperSource:
    """Serves canned records per category; ``fail`` maps category -> error text."""

    def __init__(self, by_category: Optional[Dict[str, List[PaperRecord]]] = None, *, fail: Optional[Dict[str, str]] = None, raise_for: Optional[Dict[str, Exception]] = None):
        self.by_category = by_category or {}
        self.fail = fail or {}
        self.raise_for = raise_for or {}
        self.calls: List[tuple] = []

    async def fetch_recent(self, category: str, max_results: int = 100) -> FetchResult:
        self.calls.append(("recent", category, max_results))
        if category in self.fail:
            return FetchResult(records=[], error=self.fail[category])
        records = self.by_category.get(category, [])[:max_results]
        return FetchResult(records=records, total_results=len(records))

    async def fetch_ai_papers(self, max_results: int = 200) -> FetchResult:
        self.calls.append(("all", max_results))
        records = [r for rs in self.by_category.values() for r in rs][:max_results]
        return FetchResult(records=records, total_results=len(records))

    async def fetch_by_date(self, category: str, day: date, *, max_results: int = 200, start: int = 0) -> FetchResult:
        self.calls.append(("date", category, day.isoformat(), max_results, start))
        if category in self.raise_for:
            raise self.raise_for[category]
        if category in self.fail:
            return FetchResult(records=[], error=self.fail[category])
        records = self.by_category.get(category, [])
        return FetchResult(records=records[start : start + max_results], total_results=len(records))

    async def fetch_by_id(self, arxiv_id: str) -> Optional[PaperRecord]:
        for records in self.by_category.values():
            for record in records:
                if record.external_id == arxiv_id:
                    return record
        return None

    async def close(self) -> None:
        pass


def sample_card(**overrides: Any) -> Dict[str, Any]:
    """A DTL-P reply that passes every validation tier for a three-sentence abstract."""
    checks = [
        {"check_id": check_id, "score": 1, "answer": "Somewhat.", "evidence_pointers": ["S2"]}
        for check_id in (
            "business_primitive_impact",
            "delta_specificity",
            "comparison_credibility",
            "real_world_plausibility",
            "evidence_strength",
            "failure_disclosure",
        )
    ]
    card: Dict[str, Any] = {
        "role": "Primitive",
        "role_confidence": 0.8,
        "time_to_value": "Soon",
        "time_to_value_confidence": 0.7,
        "interestingness": {"total_score": 6, "tier": "moderate", "checks": checks},
        "business_primitives": {
            "selected": ["quality"],
            "justification": "Higher accuracy.",
            "evidence_pointers": ["S2"],
        },
        "key_numbers": [
            {
                "metric_name": "accuracy",
                "value": "+12%",
                "direction": "up",
                "baseline": None,
                "conditions": "benchmark",
                "evidence_pointer": "S2",
            }
        ],
        "constraints": [{"constraint": "One GPU", "why_it_matters": "Cheap to run.", "evidence_pointer": "S3"}],
        "failure_modes": [],
        "what_is_missing": ["Latency numbers"],
        "readiness_level": "prototype_candidate",
        "readiness_justification": "Small footprint.",
        "readiness_evidence_pointers": ["S3"],
        "use_case_mapping": [],
        "taxonomy_proposals": [],
        "public_views": {
            "hook_sentence": "A cheaper way to get better accuracy.",
            "30s_summary": ["New method.", "12% more accurate."],
            "3m_summary": "The method improves accuracy by 12% on one GPU.",
        },
    }
    card.update(overrides)
    return card


def sample_v3_reply(**overrides: Any) -> Dict[str, Any]:
    reply: Dict[str, Any] = {
        "hook_sentence": "A cheaper way to get better accuracy.",
        "what_kind": "New Method",
        "time_to_value": "Soon",
        "impact_area_tags": ["Cost & Efficiency"],
        "practical_value_score": {"real_problem": 2, "concrete_result": 1, "actually_usable": 1, "total": 6},
        "key_numbers": [
            {"metric": "accuracy", "value": "+12%", "direction": "up", "baseline": None, "conditions": "benchmark"}
        ],
        "readiness_level": "Needs Engineering",
        "how_this_changes_things": [
            "Teams can train on a single GPU.",
            "Accuracy improves without more data.",
        ],
        "what_came_before": "Earlier methods needed clusters.",
    }
    reply.update(overrides)
    return reply
