"""
Prompt modules for each analysis kind.

A module pairs the literal instructions sent to the model with the schema
its JSON answer must satisfy.
"""

from __future__ import annotations

from mailsense.analysis.schemas import (
    ChurnOutput,
    CompetitorOutput,
    ContactExtractionOutput,
    DomainExtractionOutput,
    EscalationOutput,
    KudosOutput,
    SentimentOutput,
    SignatureOutput,
    UpsellOutput,
)
from mailsense.domain_models.analysis import AnalysisKind, AnalysisModule

# =============================================================================
# INSTRUCTIONS
# =============================================================================

SENTIMENT_INSTRUCTIONS = """Classify the emotional tone of this email as seen by the account team.

Return:
- value: positive|negative|neutral
- confidence: 0-1 (certainty of the classification)

How to decide:

NEUTRAL is ordinary business correspondence:
- confirmations and receipts ("payment scheduled", "received, thanks")
- routine courtesy ("thanks for sending this over")
- factual status updates and automated notifications

POSITIVE needs real satisfaction:
- delight with the product or service
- praise for people or outcomes
- thanks that goes beyond politeness
- relief after a problem was resolved, stated as satisfaction

NEGATIVE covers dissatisfaction:
- complaints, frustration, disappointment
- urgency caused by a problem ("this must be fixed today")
- threats to cancel or escalate
- sarcasm or passive-aggressive phrasing

A polite "thank you", "please" or a professional sign-off alone is NOT positive."""

ESCALATION_INSTRUCTIONS = """Decide whether this email needs escalation to management or specialist support.

Return:
- detected: true if escalation is needed, otherwise false
- confidence: 0-1
- urgency: low|medium|high|critical (when detected)
- reason: one sentence explaining why (when detected)

Signals of escalation:
- threats to cancel or leave
- legal language or threats
- requests for a manager or executive
- strong anger or frustration
- an issue that keeps coming back unresolved
- concerns raised by a high-value account"""

UPSELL_INSTRUCTIONS = """Decide whether this email contains an upsell opportunity.

Return:
- detected: true if there is an opportunity, otherwise false
- confidence: 0-1
- opportunity: what the opportunity is (when detected)
- product: the product or service involved (when detected)

Signals of an opportunity:
- questions about premium features or higher tiers
- interest in additional products or services
- needing more seats, capacity or usage"""

CHURN_INSTRUCTIONS = """Assess how likely this customer is to churn.

Return:
- riskLevel: low|medium|high|critical
- confidence: 0-1
- indicators: list of phrases or behaviours that point to churn risk (may be empty)
- reason: short explanation (optional)

Signals of churn risk:
- threats to cancel or move to another provider
- speaking favourably about competitors
- repeated complaints or unresolved problems
- lost trust in the product or the team
- pricing pressure
- missing features that competitors offer"""

KUDOS_INSTRUCTIONS = """Decide whether this email contains praise or positive feedback.

Return:
- detected: true if praise is present, otherwise false
- confidence: 0-1
- message: the praise itself (when detected)
- category: product|service|team|other (when detected)

Signals of kudos:
- praise for product quality
- compliments on service
- appreciation for named team members
- testimonials"""

COMPETITOR_INSTRUCTIONS = """Decide whether any competitor is mentioned in this email.

Return:
- detected: true if a competitor is mentioned, otherwise false
- confidence: 0-1
- competitors: names of the competitors mentioned (when detected)
- context: how they were mentioned, e.g. comparison or switching (when detected)

Look for:
- competitor company or product names
- comparisons with other vendors
- plans to switch providers
- competitive evaluations"""

SIGNATURE_INSTRUCTIONS = """Extract contact details from the "Email Signature" section only.

Return any of these that are present:
- name: full name
- title: job title
- company: company name
- email: email address shown in the signature
- phone: office phone number
- mobile: mobile number
- address: postal address
- website: website URL
- linkedin: LinkedIn profile URL
- twitter: X/Twitter handle or URL

Never take details from the email body. If there is no signature section, return an empty object."""

DOMAIN_EXTRACTION_INSTRUCTIONS = (
    "Extract company domains from the participant email addresses "
    "(served by the domain extraction service)."
)

CONTACT_EXTRACTION_INSTRUCTIONS = (
    "Extract contacts from the participant email addresses "
    "(served by the contact extraction service)."
)


# =============================================================================
# MODULES
# =============================================================================

SENTIMENT_MODULE = AnalysisModule(
    name=AnalysisKind.SENTIMENT.value,
    description="Emotional tone of the email",
    instructions=SENTIMENT_INSTRUCTIONS,
    output_schema=SentimentOutput,
    version="v1.1",
)

ESCALATION_MODULE = AnalysisModule(
    name=AnalysisKind.ESCALATION.value,
    description="Whether the email needs escalation",
    instructions=ESCALATION_INSTRUCTIONS,
    output_schema=EscalationOutput,
    version="v1.0",
)

UPSELL_MODULE = AnalysisModule(
    name=AnalysisKind.UPSELL.value,
    description="Upsell opportunities",
    instructions=UPSELL_INSTRUCTIONS,
    output_schema=UpsellOutput,
    version="v1.0",
)

CHURN_MODULE = AnalysisModule(
    name=AnalysisKind.CHURN.value,
    description="Customer churn risk",
    instructions=CHURN_INSTRUCTIONS,
    output_schema=ChurnOutput,
    version="v1.0",
)

KUDOS_MODULE = AnalysisModule(
    name=AnalysisKind.KUDOS.value,
    description="Praise and positive feedback",
    instructions=KUDOS_INSTRUCTIONS,
    output_schema=KudosOutput,
    version="v1.0",
)

COMPETITOR_MODULE = AnalysisModule(
    name=AnalysisKind.COMPETITOR.value,
    description="Competitor mentions",
    instructions=COMPETITOR_INSTRUCTIONS,
    output_schema=CompetitorOutput,
    version="v1.0",
)

SIGNATURE_MODULE = AnalysisModule(
    name=AnalysisKind.SIGNATURE_EXTRACTION.value,
    description="Contact details from the email signature",
    instructions=SIGNATURE_INSTRUCTIONS,
    output_schema=SignatureOutput,
    version="v1.1",
)

DOMAIN_EXTRACTION_MODULE = AnalysisModule(
    name=AnalysisKind.DOMAIN_EXTRACTION.value,
    description="Company domains from participant addresses",
    instructions=DOMAIN_EXTRACTION_INSTRUCTIONS,
    output_schema=DomainExtractionOutput,
    version="v1.0",
)

CONTACT_EXTRACTION_MODULE = AnalysisModule(
    name=AnalysisKind.CONTACT_EXTRACTION.value,
    description="Contacts from participant addresses",
    instructions=CONTACT_EXTRACTION_INSTRUCTIONS,
    output_schema=ContactExtractionOutput,
    version="v1.0",
)

ALL_MODULES: tuple[AnalysisModule, ...] = (
    SENTIMENT_MODULE,
    ESCALATION_MODULE,
    UPSELL_MODULE,
    CHURN_MODULE,
    KUDOS_MODULE,
    COMPETITOR_MODULE,
    SIGNATURE_MODULE,
    DOMAIN_EXTRACTION_MODULE,
    CONTACT_EXTRACTION_MODULE,
)

MODULES_BY_NAME: dict[str, AnalysisModule] = {m.name: m for m in ALL_MODULES}
