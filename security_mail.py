"""
Security alert mail

Sends one plain-text alert per qualifying event to the operations mailbox.
``smtplib`` blocks, so the async helpers hand the send to the event loop's
default executor.
"""

import asyncio
import logging
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Optional

from security_config import DefenseConfig
from threat_detector import ThreatAnalysis

logger = logging.getLogger("security_mail")


class AlertMailer:
    """
    Alert mail sender

    ``send`` never raises; it reports failure through its return value and
    the log.
    """

    def __init__(self, config: DefenseConfig):
        self.config = config

    @property
    def enabled(self) -> bool:
        return self.config.EMAIL_ENABLED and bool(self.config.ALERT_EMAIL_TO)

    def create_message(self, subject: str, body: str) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg['From'] = formataddr((f"{self.config.PROJECT_NAME} security", self.config.ALERT_EMAIL_FROM))
        msg['To'] = ', '.join(self.config.ALERT_EMAIL_TO)
        msg['Subject'] = subject
        msg.attach(MIMEText(body, 'plain', 'utf-8'))
        return msg

    def send(self, subject: str, body: str) -> bool:
        if not self.enabled:
            logger.info(f"Email disabled, skipping alert: {subject}")
            return False

        try:
            msg = self.create_message(subject, body)
            with smtplib.SMTP(self.config.SMTP_HOST, self.config.SMTP_PORT, timeout=30) as server:
                if self.config.SMTP_USE_TLS:
                    server.starttls()
                if self.config.SMTP_USER and self.config.SMTP_PASSWORD:
                    server.login(self.config.SMTP_USER, self.config.SMTP_PASSWORD)
                server.send_message(msg)
            logger.info(f"Alert email sent: {subject}")
            return True
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed: {e}")
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send alert email: {type(e).__name__}: {e}")
        return False

    async def send_async(self, subject: str, body: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.send, subject, body)

    # === Message builders ===

    def _project_tag(self) -> str:
        return f"{self.config.PROJECT_NAME} - {self.config.PROJECT_LANG}"

    def build_threat_alert(self, analysis: ThreatAnalysis, ip: str, endpoint: str,
                           user_agent: Optional[str], block_hours: float):
        severity = analysis.severity.value.upper()
        subject = f"[{severity}] Security Threat Detected - {self._project_tag()}"

        sections = []
        for category, reports in analysis.threats.items():
            if not reports:
                continue
            lines = "\n".join(f"  - {r.field}: {r.sample[:100]}..." for r in reports)
            sections.append(f"{category.value.upper()}\n{lines}")
        threats_text = "\n\n".join(sections)

        body = f"""========================================
        Security Threat Alert
========================================

Time:        {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}
IP Address:  {ip}
Endpoint:    {endpoint}
User Agent:  {user_agent or 'N/A'}
Severity:    {severity}

Detected threats:
{threats_text}

This IP has been automatically blocked for {block_hours:g} hours.
"""
        return subject, body

    def build_rate_limit_alert(self, ip: str, endpoint: str, hit_count: int,
                               user_agent: Optional[str], block_hours: float):
        subject = f"Rate Limit Exceeded Alert - {self._project_tag()}"
        body = f"""========================================
        Rate Limit Exceeded
========================================

Time:        {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}
IP Address:  {ip}
Endpoint:    {endpoint}
Hit Count:   {hit_count}
User Agent:  {user_agent or 'N/A'}

The IP address {ip} exceeded the rate limit and has been blocked for {block_hours:g} hours.
"""
        return subject, body

    async def send_threat_alert(self, analysis: ThreatAnalysis, ip: str, endpoint: str,
                                user_agent: Optional[str] = None, block_hours: float = 2) -> bool:
        subject, body = self.build_threat_alert(analysis, ip, endpoint, user_agent, block_hours)
        return await self.send_async(subject, body)

    async def send_rate_limit_alert(self, ip: str, endpoint: str, hit_count: int,
                                    user_agent: Optional[str] = None, block_hours: float = 1) -> bool:
        subject, body = self.build_rate_limit_alert(ip, endpoint, hit_count, user_agent, block_hours)
        return await self.send_async(subject, body)
