from fastapi import Request

from supamail.activity import ActivityLog
from supamail.config import Settings
from supamail.service.pipeline import InboundPipeline
from supamail.store import RuleStore


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_pipeline(request: Request) -> InboundPipeline:
    return request.app.state.pipeline


def get_store(request: Request) -> RuleStore:
    return request.app.state.pipeline.store


def get_activity(request: Request) -> ActivityLog:
    return request.app.state.pipeline.activity
