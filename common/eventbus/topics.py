from __future__ import annotations

from .core import Topic


# 작업 실행기 -> 원장: 출력 도착/실패 진행 이벤트
TOPIC_JOB_PROGRESS = Topic("credit-ledger.job.progress")
# 원장 -> 실시간 알림 채널: 작업 상태 변경 이벤트
TOPIC_JOB_STATUS = Topic("credit-ledger.job.status")

ALL_TOPICS: list[Topic] = [
    TOPIC_JOB_PROGRESS,
    TOPIC_JOB_STATUS,
]
