"""
Summarize Thread API Routes.

Stateless access to the running-summary engine: the caller supplies the
existing summary (if any) and the new analysis result; nothing is stored.
"""

import logging

from fastapi import APIRouter, Depends, Request
from mailsense.api.dependencies import bind_tenant, get_correlation_id, get_services
from mailsense.api.models import SummarizeRequest, SummarizeResponse
from mailsense.db.models import ThreadSummary
from mailsense.domain_models.analysis import AnalysisResult, TokenUsage
from mailsense.observability import trace_operation
from mailsense.services import Services
from mailsense.threads.summaries import DIRECT_FORMAT_MODEL

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/summarize", response_model=SummarizeResponse)
@trace_operation("api_summarize")
async def summarize_thread_endpoint(
    request: SummarizeRequest,
    http_request: Request,
    services: Services = Depends(get_services),
) -> SummarizeResponse:
    bind_tenant(request.tenant_id)
    summaries = services.summaries
    result = AnalysisResult(
        kind=request.kind,
        result=request.result,
        model_used="caller",
        reasoning=request.reasoning,
    )

    if not request.existing_summary:
        draft = summaries.initial_summary(request.kind, request.message, result)
    else:
        # Transient row; never added to a session
        existing = ThreadSummary(
            kind=request.kind,
            summary=request.existing_summary,
            summary_metadata=request.metadata or {},
        )
        draft = await summaries.merge_summary(
            request.kind, existing, request.message, result
        )

    logger.info(
        "Summarized %s for message %s with %s",
        request.kind,
        request.message.message_id,
        draft.model_used,
    )
    usage = (
        TokenUsage.model_validate(draft.usage)
        if draft.usage and draft.model_used != DIRECT_FORMAT_MODEL
        else None
    )
    return SummarizeResponse(
        correlation_id=get_correlation_id(http_request),
        summary=draft.summary,
        model_used=draft.model_used,
        usage=usage,
    )
