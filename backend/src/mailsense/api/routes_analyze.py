"""
Analysis API Routes.

Synchronous entry points into the analysis core. `/analyze` and
`/signature-extract` only call models; `/messages/{id}/analyze` runs the
full gather/commit pipeline for a stored message.
"""

import logging
import uuid
from typing import Any

from fastapi import APIRouter, Depends, Request
from mailsense.api.dependencies import bind_tenant, get_correlation_id, get_services
from mailsense.api.models import (
    AnalyzeRequest,
    AnalyzeResponse,
    MessageAnalyzeRequest,
    MessageAnalyzeResponse,
    SignatureExtractRequest,
    SignatureExtractResponse,
)
from mailsense.common.exceptions import NotFoundError, ValidationError
from mailsense.context import message_id_ctx
from mailsense.db.repositories import MessageRepository
from mailsense.domain_models.analysis import (
    AnalysisKind,
    AnalysisResult,
    ThreadContext,
)
from mailsense.observability import record_metric, trace_operation
from mailsense.pipeline import PipelineOptions
from mailsense.services import Services

logger = logging.getLogger(__name__)
router = APIRouter()


def _payloads(results: dict[str, AnalysisResult]) -> dict[str, Any]:
    """Kind -> raw result payload, or `{"error": ...}` for a kind that failed."""
    payloads: dict[str, Any] = {}
    for kind, result in results.items():
        if result.succeeded:
            payloads[kind] = result.result
        else:
            payloads[kind] = {"error": result.error or "No result"}
    return payloads


@router.post("/analyze", response_model=AnalyzeResponse)
@trace_operation("api_analyze")
async def analyze_endpoint(
    request: AnalyzeRequest,
    http_request: Request,
    services: Services = Depends(get_services),
) -> AnalyzeResponse:
    bind_tenant(request.tenant_id)
    message_id_ctx.set(str(request.message.message_id))

    pipeline = services.pipeline
    options = PipelineOptions(
        tenant_id=request.tenant_id,
        message=request.message,
        thread_context=request.thread_context,
        analysis_kinds=request.analysis_kinds,
        config=request.config,
    )
    config = pipeline.tenant_config(options)
    kinds = pipeline.requested_kinds(options, config)
    thread_context = (
        ThreadContext(text=request.thread_context) if request.thread_context else None
    )

    results = await pipeline.run_analyses(options, kinds, config, thread_context)
    payloads = _payloads(results)
    success = not kinds or any(r.succeeded for r in results.values())

    record_metric("api_analyze_requests", 1, {"success": str(success).lower()})
    logger.info(
        "Analyzed message %s: %d kinds requested, %d returned",
        request.message.message_id,
        len(kinds),
        len(payloads),
    )
    return AnalyzeResponse(
        correlation_id=get_correlation_id(http_request),
        success=success,
        results=payloads,
    )


@router.post("/signature-extract", response_model=SignatureExtractResponse)
@trace_operation("api_signature_extract")
async def signature_extract_endpoint(
    request: SignatureExtractRequest,
    http_request: Request,
    services: Services = Depends(get_services),
) -> SignatureExtractResponse:
    bind_tenant(request.tenant_id)
    correlation_id = get_correlation_id(http_request)

    if not request.message.signature:
        return SignatureExtractResponse(
            correlation_id=correlation_id, success=False, signature=None
        )

    result = await services.executor.execute_single(
        AnalysisKind.SIGNATURE_EXTRACTION.value, request.message, request.tenant_id
    )
    return SignatureExtractResponse(
        correlation_id=correlation_id, success=True, signature=result.result
    )


@router.post("/messages/{message_id}/analyze", response_model=MessageAnalyzeResponse)
@trace_operation("api_analyze_stored_message")
async def analyze_stored_message_endpoint(
    message_id: str,
    request: MessageAnalyzeRequest,
    http_request: Request,
    services: Services = Depends(get_services),
) -> MessageAnalyzeResponse:
    try:
        message_uuid = uuid.UUID(message_id)
    except ValueError:
        raise ValidationError("Invalid message_id", field="message_id")

    session_factory = services.pipeline.require_sessions()
    messages = MessageRepository()
    async with session_factory() as session:
        message = await messages.get(session, message_uuid)
        thread = (
            await messages.get_thread_messages(session, message.thread_id)
            if message is not None and message.thread_id is not None
            else []
        )
    if message is None:
        raise NotFoundError(
            f"Message {message_id} not found",
            resource="message",
            resource_id=message_id,
        )

    bind_tenant(message.tenant_id)
    message_id_ctx.set(message_id)

    result = await services.pipeline.execute(
        PipelineOptions(
            tenant_id=message.tenant_id,
            message=message,
            thread_messages=thread,
            analysis_kinds=request.analysis_kinds,
            config=request.config,
            persist=request.persist,
            use_thread_summaries=request.use_thread_summaries,
        )
    )
    return MessageAnalyzeResponse(
        correlation_id=get_correlation_id(http_request),
        success=result.success,
        message_id=str(result.message_id),
        thread_id=str(result.thread_id) if result.thread_id else None,
        results=_payloads(result.results),
        companies_created=result.companies_created,
        contacts_created=result.contacts_created,
        analyses_saved=result.analyses_saved,
    )
