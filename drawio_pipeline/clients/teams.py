import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import requests
from pydantic import BaseModel, Field

from ..config import CIContext, TeamsSettings

logger = logging.getLogger(__name__)

COLOR_SUCCESS = "00FF00"
COLOR_FAILURE = "FF0000"
COLOR_INFO = "0076D7"

DRAWIO_ICON_URL = "https://raw.githubusercontent.com/jgraph/drawio-desktop/master/build/icon.png"
DEFAULT_TITLE = "Draw.io Diagrams Processing Update"


# --- Card models (legacy Office 365 connector MessageCard) ---

class Fact(BaseModel):
    name: str
    value: str


class CardSection(BaseModel):
    activityTitle: str
    activitySubtitle: str
    activityImage: str = DRAWIO_ICON_URL
    facts: List[Fact] = Field(default_factory=list)
    text: str = ""


class UriTarget(BaseModel):
    os: str = "default"
    uri: str


class OpenUriAction(BaseModel):
    type: str = Field("OpenUri", alias="@type")
    name: str = "View Workflow Run"
    targets: List[UriTarget]

    model_config = {"populate_by_name": True}


class MessageCard(BaseModel):
    """Payload accepted by Teams incoming webhooks"""
    type: str = Field("MessageCard", alias="@type")
    context: str = Field("http://schema.org/extensions", alias="@context")
    themeColor: str = COLOR_INFO
    summary: str
    sections: List[CardSection]
    potentialAction: Optional[List[OpenUriAction]] = None

    model_config = {"populate_by_name": True}

    def to_payload(self) -> Dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class TeamsNotifier:
    """
    Best-effort Teams notifications. A failed post is logged and never fails
    the run; without a webhook URL nothing is sent.
    """

    def __init__(self, settings: TeamsSettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def build_card(
        self,
        title: str,
        text: str,
        color: str = COLOR_INFO,
        link: Optional[str] = None,
        facts: Optional[Dict[str, str]] = None,
        subtitle: Optional[str] = None,
    ) -> MessageCard:
        subtitle = subtitle or f"Notification at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        section = CardSection(
            activityTitle=title,
            activitySubtitle=subtitle,
            facts=[Fact(name=k, value=str(v)) for k, v in (facts or {}).items()],
            text=text,
        )
        actions = [OpenUriAction(targets=[UriTarget(uri=link)])] if link else None
        return MessageCard(themeColor=color, summary=title, sections=[section], potentialAction=actions)

    def notify(
        self,
        title: str,
        text: str,
        color: str = COLOR_INFO,
        link: Optional[str] = None,
        facts: Optional[Dict[str, str]] = None,
        subtitle: Optional[str] = None,
    ) -> bool:
        if not self.enabled:
            logger.warning("Teams webhook URL not configured. Skipping notification.")
            return False

        card = self.build_card(title, text, color=color, link=link, facts=facts, subtitle=subtitle)
        try:
            response = self.session.post(
                self.settings.webhook_url,
                json=card.to_payload(),
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as e:
            logger.warning(f"Teams notification failed: {e}")
            return False

        if response.status_code >= 400:
            logger.warning(f"Teams notification rejected: HTTP {response.status_code} {response.text[:200]}")
            return False

        logger.info("Teams notification sent successfully.")
        return True

    def notify_run(
        self,
        success: bool,
        ci: CIContext,
        processed: Sequence[str] = (),
        failed: Sequence[str] = (),
        title: str = DEFAULT_TITLE,
    ) -> bool:
        """Success / failure card for a whole workflow run."""
        if success:
            color = COLOR_SUCCESS
            text = "Draw.io files were processed successfully."
            if processed:
                text += " Updated diagrams: " + ", ".join(processed)
        else:
            color = COLOR_FAILURE
            text = "Draw.io processing failed. Please check the workflow logs for details."
            if failed:
                text += " Failed diagrams: " + ", ".join(failed)

        facts = {
            "Repository": ci.repository,
            "Commit": ci.sha,
            "Workflow": ci.workflow,
            "Triggered by": ci.actor,
            "Processed files": str(len(processed)),
        }
        if failed:
            facts["Failed files"] = str(len(failed))
        status = "✅ Success" if success else "❌ Failed"
        return self.notify(f"{title} - {status}", text, color=color, link=ci.run_url, facts=facts)
