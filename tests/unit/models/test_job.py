import pydantic
import pytest

from scrapeflow.models.job import Job, JobFilter, JobStatus, ScrapingConfig
from scrapeflow.models.result import QualityMetrics, Result


def test_job_serialises_with_camel_case_keys():
    config = ScrapingConfig.model_validate({"source": {"url": "https://example.com"}})
    job = Job(id="j-1", config=config, status=JobStatus.PENDING)

    data = job.model_dump(by_alias=True)

    assert {"createdAt", "executionDetails", "retryCount", "version"} <= data.keys()
    assert data["config"]["options"]["rateLimit"] == {"requests": 60, "period": 60000}
    assert Job.model_validate(data) == job


@pytest.mark.parametrize("page_size", [0, 101])
def test_filter_page_size_bounds(page_size):
    with pytest.raises(pydantic.ValidationError):
        JobFilter(page_size=page_size)


def test_filter_page_must_be_positive():
    with pytest.raises(pydantic.ValidationError):
        JobFilter.model_validate({"page": 0})


def test_overall_quality_is_the_mean():
    metrics = QualityMetrics(completeness=100, accuracy=80, consistency=60, freshness=40)
    assert metrics.overall == 70.0


def test_new_result_gets_fresh_identity():
    a = Result.new(job_id="j", source_type="API", source_url="https://x", content={})
    b = Result.new(job_id="j", source_type="API", source_url="https://x", content={})

    assert a.id != b.id
    assert a.metadata.processing_history == []
    assert a.metadata.processing_history is not b.metadata.processing_history
