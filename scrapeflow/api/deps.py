from fastapi import Request

from scrapeflow.services.job_scheduler import JobExecutor
from scrapeflow.services.scraping_service import ScrapingService


def get_service(request: Request) -> ScrapingService:
    return request.app.state.service


def get_dispatch(request: Request) -> JobExecutor:
    """How on-demand jobs are handed off for execution."""
    return request.app.state.dispatch
