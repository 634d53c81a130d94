"""Commit batch: turns a reviewed draft into persisted landing pages and tracking links.

Step contracts (run in order by StepRunner):
    validate_draft:
        Name, at least one landing page, and at least one source/medium pair are
        present; otherwise CommitValidationError (an input error, never retried).
        Fixes the stored campaign key (the sanitized name used as utm_campaign);
        landing pages and the tag lookup are keyed by it too.
    merge_existing_tags:
        Only for existing campaigns; merges the campaign's stored tags with the
        draft's tags. A lookup failure falls back to the draft's tags.
    generate_links:
        Builds every link before any write; LinkGenerationError aborts the batch.
    save_landing_pages / save_tracking_links:
        Sequential, non-transactional writes. A GatewayError stops the batch and
        leaves earlier writes in place; a retry re-runs the whole batch and relies
        on collaborator-side dedup of exact matches.
    report:
        Always runs and logs what was written.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .draft import CampaignDraft, SelectionAggregator
from .gateway import GatewayError, PersistenceGateway
from .link_engine import GeneratedLink, generate_links
from .sanitization import sanitize_parameter
from .step_runtime import PipelineStep, StepRunner

logger = logging.getLogger("linkwizard.commit")


class CommitValidationError(ValueError):
    """The draft is missing something commit requires."""


@dataclass
class CommitContext:
    """Mutable context passed through each commit step."""
    session_id: str
    draft: CampaignDraft
    user_id: Optional[int] = None
    account_id: Optional[int] = None
    # Stored campaign key, identical to utm_campaign on every generated link.
    campaign: str = ""
    tags: List[str] = field(default_factory=list)
    links: List[GeneratedLink] = field(default_factory=list)
    saved_landing_pages: int = 0
    saved_links: int = 0
    failed_step: Optional[str] = None


class CampaignCommitter:
    def __init__(self, gateway: PersistenceGateway) -> None:
        self._gateway = gateway
        self._runner = StepRunner(
            steps=[
                PipelineStep("validate_draft", self._step_validate_draft),
                PipelineStep(
                    "merge_existing_tags",
                    self._step_merge_existing_tags,
                    skip_if=lambda context: not context.draft.is_existing_campaign,
                ),
                PipelineStep("generate_links", self._step_generate_links),
                PipelineStep("save_landing_pages", self._step_save_landing_pages),
                PipelineStep("save_tracking_links", self._step_save_tracking_links),
                PipelineStep("report", self._step_report, always_run=True),
            ]
        )

    def commit(
        self,
        session_id: str,
        draft: CampaignDraft,
        user_id: Optional[int] = None,
        account_id: Optional[int] = None,
    ) -> CommitContext:
        """Purpose: Run the full commit batch for one draft.
        Inputs/Outputs: Inputs are the session id, draft, and owner ids; output is the
            populated CommitContext (links and write counts).
        Side Effects / State: Persists landing pages and links through the gateway.
        Dependencies: StepRunner and the step methods on this class.
        Failure Modes: CommitValidationError, LinkGenerationError, or GatewayError
            propagate to the conversation engine.
        If Removed: Reviewed drafts can never be saved.
        Testing Notes: Fail the second link write and verify landing pages stay written.
        """
        # Seed the context with the draft's own tags.
        context = CommitContext(
            session_id=session_id,
            draft=draft,
            user_id=user_id,
            account_id=account_id,
            tags=list(draft.selected_tags),
        )
        logger.info("session=%s commit=start campaign=%s", session_id, draft.name)
        self._runner.run(context)
        return context

    def _step_validate_draft(self, context: CommitContext) -> None:
        draft = context.draft
        if not draft.name.strip():
            raise CommitValidationError("Campaign name is required. Please provide a campaign name first.")
        if not draft.landing_pages:
            raise CommitValidationError("At least one landing page is required. Please add a landing page first.")
        if not draft.selected_sources:
            raise CommitValidationError("At least one source is required. Please select a source first.")
        if not SelectionAggregator(draft).selected_pairs():
            raise CommitValidationError("At least one medium is required. Please select a medium first.")
        context.campaign = sanitize_parameter(draft.name)

    def _step_merge_existing_tags(self, context: CommitContext) -> None:
        try:
            existing = self._gateway.campaign_tags(context.campaign)
        except GatewayError as exc:
            logger.warning("session=%s existing_tags=unavailable error=%s", context.session_id, exc)
            return
        merged: List[str] = []
        for tag in list(existing) + list(context.tags):
            if tag.lower() not in {known.lower() for known in merged}:
                merged.append(tag)
        context.tags = merged

    def _step_generate_links(self, context: CommitContext) -> None:
        context.links = generate_links(context.draft, tags=context.tags)

    def _step_save_landing_pages(self, context: CommitContext) -> None:
        for page in context.draft.landing_pages:
            try:
                self._gateway.create_landing_page(
                    context.campaign, page.url, page.label, context.user_id, context.account_id
                )
            except GatewayError:
                context.failed_step = "save_landing_pages"
                raise
            context.saved_landing_pages += 1

    def _step_save_tracking_links(self, context: CommitContext) -> None:
        for link in context.links:
            try:
                self._gateway.create_tracking_link(link.to_payload(), context.user_id, context.account_id)
            except GatewayError:
                context.failed_step = "save_tracking_links"
                raise
            context.saved_links += 1

    def _step_report(self, context: CommitContext) -> None:
        done = bool(context.links) and context.saved_links == len(context.links)
        status = "done" if done else "failed"
        logger.info(
            "session=%s commit=%s landing_pages=%d/%d links=%d/%d",
            context.session_id,
            status,
            context.saved_landing_pages,
            len(context.draft.landing_pages),
            context.saved_links,
            len(context.links),
        )
