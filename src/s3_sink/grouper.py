# src/s3_sink/grouper.py

"""
Record groupers: the in-memory batch accumulator between flush cycles.

A grouper assigns each incoming record to a destination filename rendered
from the file name template. The filename of a batch is rendered from its
first record and never changes afterwards.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable

from .exceptions import TemplateError
from .keys import KeyContext, render, validate_template
from .schemas import SinkRecord
from .templating import Template

logger = logging.getLogger(__name__)

ContextFactory = Callable[[SinkRecord], KeyContext]


class RecordGrouper(ABC):
    REQUIRED_VARIABLES: frozenset[str] = frozenset()
    OPTIONAL_VARIABLES: frozenset[str] = frozenset()

    def __init__(self, template: Template, context_factory: ContextFactory):
        self._template = template
        self._context = context_factory
        self._files: dict[str, list[SinkRecord]] = {}

    @abstractmethod
    def put(self, record: SinkRecord) -> None:
        pass

    def records(self) -> dict[str, list[SinkRecord]]:
        """A snapshot of the pending batches, keyed by filename."""
        return {filename: list(batch) for filename, batch in self._files.items()}

    def clear(self) -> None:
        self._files.clear()

    def __len__(self) -> int:
        return sum(len(batch) for batch in self._files.values())

    def _filename(self, record: SinkRecord) -> str:
        return render(self._template, self._context(record))


class TopicPartitionRecordGrouper(RecordGrouper):
    """
    One file per topic partition, starting at the first buffered offset.
    With ``max_records`` > 0 a partition rolls over to a new file once the
    current one holds that many records.
    """

    REQUIRED_VARIABLES = frozenset({"topic", "partition", "start_offset"})
    OPTIONAL_VARIABLES = frozenset({"timestamp"})

    def __init__(
        self,
        template: Template,
        context_factory: ContextFactory,
        max_records: int = 0,
    ):
        super().__init__(template, context_factory)
        self._max_records = max_records
        self._heads: dict[tuple[str, int], str] = {}

    def put(self, record: SinkRecord) -> None:
        tp = record.topic_partition
        filename = self._heads.get(tp)
        if filename is None or self._is_full(filename):
            filename = self._filename(record)
            self._heads[tp] = filename
        self._files.setdefault(filename, []).append(record)

    def _is_full(self, filename: str) -> bool:
        return 0 < self._max_records <= len(self._files.get(filename, ()))

    def clear(self) -> None:
        super().clear()
        self._heads.clear()


class KeyRecordGrouper(RecordGrouper):
    """One file per record key, holding only the latest record for it."""

    REQUIRED_VARIABLES = frozenset({"key"})
    OPTIONAL_VARIABLES = frozenset({"topic", "partition"})

    def put(self, record: SinkRecord) -> None:
        self._files[self._filename(record)] = [record]


def _accepts(grouper_cls: type[RecordGrouper], names: set[str]) -> bool:
    allowed = grouper_cls.REQUIRED_VARIABLES | grouper_cls.OPTIONAL_VARIABLES
    return grouper_cls.REQUIRED_VARIABLES <= names <= allowed


def new_record_grouper(
    template: Template, context_factory: ContextFactory, max_records: int = 0
) -> RecordGrouper:
    """Picks the grouper that matches the variables the template uses."""
    names = template.variable_names()
    if _accepts(KeyRecordGrouper, names):
        validate_template(template, names)
        grouper: RecordGrouper = KeyRecordGrouper(template, context_factory)
    elif _accepts(TopicPartitionRecordGrouper, names):
        validate_template(template, names)
        grouper = TopicPartitionRecordGrouper(template, context_factory, max_records)
    else:
        raise TemplateError(
            f"Unsupported file name template variables {sorted(names)}; expected "
            "topic, partition and start_offset (optionally timestamp), "
            "or key (optionally topic and partition)",
            template=template.source,
        )
    logger.debug(
        "Selected record grouper",
        extra={"grouper": type(grouper).__name__, "template": template.source},
    )
    return grouper
