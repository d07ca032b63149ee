"""
Email Notification Service

Sends transactional email through the Resend HTTP API:
- Donor thank-you after a donation is verified
- Owner progress update when a campaign crosses a funding milestone

Callers treat every send as best effort: a failed email never undoes a
verified donation.
"""

import html
import logging
import os
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class EmailError(Exception):
    """Raised when the email provider rejects or cannot take a message."""
    pass


def format_kes(amount) -> str:
    """KSh 12,500 style amount for email bodies."""
    return f"KSh {float(amount):,.0f}"


class EmailSender:
    """Resend email client."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        app_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0
    ):
        self.api_key = api_key if api_key is not None else os.getenv("RESEND_API_KEY", "")
        self.from_email = from_email or os.getenv("RESEND_FROM_EMAIL", "noreply@tufund.com")
        self.app_url = (app_url or os.getenv("APP_URL", "http://localhost:3000")).rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

        if not self.api_key:
            logger.warning("Email: RESEND_API_KEY not set, emails will be skipped")

    async def send(self, to: str, subject: str, html_body: str) -> None:
        """
        Send one HTML email.

        Raises:
            EmailError: If the provider call fails
        """
        if not self.api_key:
            logger.info(f"Email: Skipping '{subject}' to {to} (not configured)")
            return

        try:
            response = await self.client.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": self.from_email,
                    "to": [to],
                    "subject": subject,
                    "html": html_body,
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise EmailError(f"Failed to send email to {to}: {e}") from e

        logger.info(f"Email: Sent '{subject}' to {to}")

    def campaign_url(self, slug: str) -> str:
        return f"{self.app_url}/campaign/{slug}"

    async def send_donation_confirmation(
        self,
        donor_email: str,
        donor_name: str,
        campaign_title: str,
        campaign_slug: str,
        amount
    ) -> None:
        """Thank the donor once their donation is verified."""
        campaign_url = self.campaign_url(campaign_slug)
        body = f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
          <h1>Thank you for your donation!</h1>
          <p>Dear {html.escape(donor_name)},</p>
          <p>We are grateful for your generous donation of {format_kes(amount)} to
             <strong>{html.escape(campaign_title)}</strong>.</p>
          <p>Your contribution makes a real difference and helps us reach our fundraising goal.</p>
          <p>You can view the campaign progress at: <a href="{campaign_url}">{campaign_url}</a></p>
          <p>Best regards,<br>The TuFund Team</p>
        </div>
        """
        await self.send(donor_email, "Thank you for your donation!", body)

    async def send_progress_update(
        self,
        owner_email: str,
        owner_name: str,
        campaign_title: str,
        campaign_slug: str,
        current_amount,
        goal_amount,
        progress: int
    ) -> None:
        """Tell the campaign owner their campaign crossed a milestone."""
        campaign_url = self.campaign_url(campaign_slug)
        body = f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
          <h1>Great progress on your campaign!</h1>
          <p>Dear {html.escape(owner_name)},</p>
          <p>Your campaign <strong>{html.escape(campaign_title)}</strong> has reached {progress}% of its goal!</p>
          <p>Current amount raised: {format_kes(current_amount)}</p>
          <p>Goal: {format_kes(goal_amount)}</p>
          <p>Keep sharing your campaign to reach your goal!</p>
          <p><a href="{campaign_url}">View Campaign</a></p>
          <p>Best regards,<br>The TuFund Team</p>
        </div>
        """
        await self.send(
            owner_email,
            f'Your campaign "{campaign_title}" is {progress}% funded!',
            body
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
