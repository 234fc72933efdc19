"""Legacy REST/XML server dialect."""

from collect_pipeline.aggregate.batches import DEFAULT_PAGE_SIZE, InstanceIdBatchGetter
from collect_pipeline.aggregate.parsing import (
    parse_form_list,
    parse_instance_id_batch,
    parse_manifest,
)
from collect_pipeline.aggregate.pull import PullFromAggregate, last_cursor
from collect_pipeline.aggregate.server import AggregateServer, clean_url
from collect_pipeline.aggregate.submission_key import SubmissionKeyGenerator

__all__ = [
    "AggregateServer",
    "DEFAULT_PAGE_SIZE",
    "InstanceIdBatchGetter",
    "PullFromAggregate",
    "SubmissionKeyGenerator",
    "clean_url",
    "last_cursor",
    "parse_form_list",
    "parse_instance_id_batch",
    "parse_manifest",
]
