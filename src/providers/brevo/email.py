from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _address(email: str, name: str | None = None) -> dict[str, str]:
    return {key: value for key, value in (("email", email), ("name", name)) if value}


@dataclass
class NotificationRequest:
    """Transactional email for the Brevo ``/smtp/email`` endpoint.

    Built fresh for every dispatch attempt through the chaining helpers::

        request = NotificationRequest().to("ana@example.com", "Ana").template(105).params({"FIRSTNAME": "Ana"})
    """

    recipients: list[dict[str, str]] = field(default_factory=list)
    template_id: int | None = None
    template_params: dict[str, Any] = field(default_factory=dict)
    sender_address: dict[str, str] | None = None
    subject_line: str | None = None
    html_content: str | None = None
    text_content: str | None = None
    custom_headers: dict[str, str] = field(default_factory=dict)
    cc_recipients: list[dict[str, str]] = field(default_factory=list)
    bcc_recipients: list[dict[str, str]] = field(default_factory=list)
    reply_to_address: dict[str, str] | None = None
    tag_list: list[str] | None = None

    def to(self, email: str, name: str | None = None) -> NotificationRequest:
        self.recipients.append(_address(email, name))
        return self

    def to_many(self, recipients: list[str | dict[str, str]]) -> NotificationRequest:
        for recipient in recipients:
            if isinstance(recipient, dict):
                self.to(recipient["email"], recipient.get("name"))
            else:
                self.to(recipient)
        return self

    def template(self, template_id: int) -> NotificationRequest:
        self.template_id = template_id
        return self

    def params(self, params: dict[str, Any]) -> NotificationRequest:
        self.template_params.update(params)
        return self

    def param(self, key: str, value: Any) -> NotificationRequest:
        self.template_params[key] = value
        return self

    def sender(self, email: str, name: str | None = None) -> NotificationRequest:
        self.sender_address = _address(email, name)
        return self

    def subject(self, subject: str) -> NotificationRequest:
        self.subject_line = subject
        return self

    def html(self, content: str) -> NotificationRequest:
        self.html_content = content
        return self

    def text(self, content: str) -> NotificationRequest:
        self.text_content = content
        return self

    def headers(self, headers: dict[str, str]) -> NotificationRequest:
        self.custom_headers.update(headers)
        return self

    def cc(self, email: str, name: str | None = None) -> NotificationRequest:
        self.cc_recipients.append(_address(email, name))
        return self

    def bcc(self, email: str, name: str | None = None) -> NotificationRequest:
        self.bcc_recipients.append(_address(email, name))
        return self

    def reply_to(self, email: str, name: str | None = None) -> NotificationRequest:
        self.reply_to_address = _address(email, name)
        return self

    def tags(self, tags: list[str]) -> NotificationRequest:
        self.tag_list = list(tags)
        return self

    def tag(self, tag: str) -> NotificationRequest:
        if self.tag_list is None:
            self.tag_list = []
        self.tag_list.append(tag)
        return self

    def validate(self) -> None:
        if not self.recipients:
            raise ValueError("At least one recipient is required")
        if self.template_id is None and not self.html_content and not self.text_content:
            raise ValueError("Either template_id or html/text content is required")
        if self.template_id is None and not self.subject_line:
            raise ValueError("Subject is required for non-template emails")

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"to": list(self.recipients)}
        if self.template_id:
            payload["templateId"] = self.template_id
        if self.template_params:
            payload["params"] = dict(self.template_params)
        if self.sender_address:
            payload["sender"] = self.sender_address
        if self.subject_line:
            payload["subject"] = self.subject_line
        if self.html_content:
            payload["htmlContent"] = self.html_content
        if self.text_content:
            payload["textContent"] = self.text_content
        if self.custom_headers:
            payload["headers"] = dict(self.custom_headers)
        if self.cc_recipients:
            payload["cc"] = list(self.cc_recipients)
        if self.bcc_recipients:
            payload["bcc"] = list(self.bcc_recipients)
        if self.reply_to_address:
            payload["replyTo"] = self.reply_to_address
        if self.tag_list is not None:
            payload["tags"] = list(self.tag_list)
        return payload
