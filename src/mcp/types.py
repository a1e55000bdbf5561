"""Data types shared between the Gmail client and the thread pipeline."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Participant:
    """An email address with an optional display name."""

    email: str
    name: str | None = None


@dataclass(frozen=True)
class LabelRef:
    """A provider label, either applied to a thread or defined on the account."""

    id: str
    name: str


@dataclass(frozen=True)
class Message:
    """A single message as fetched from the provider.

    Messages are immutable once fetched and keyed by the provider message id,
    which is also the id of the message's entry in the vector index.
    """

    id: str
    thread_id: str
    sender: Participant | None
    subject: str
    decoded_body: str = ""
    to: list[Participant] = field(default_factory=list)
    cc: list[Participant] = field(default_factory=list)
    received_on: str | None = None
    connection_id: str = ""


@dataclass(frozen=True)
class Thread:
    """A provider-side conversation, messages ordered oldest → newest."""

    id: str
    connection_id: str
    messages: list[Message] = field(default_factory=list)
    labels: list[LabelRef] = field(default_factory=list)

    @property
    def latest_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None


@dataclass(frozen=True)
class DraftSpec:
    """Everything the provider needs to create a reply draft."""

    to: str
    subject: str
    body: str
    thread_id: str
    cc: list[str] = field(default_factory=list)
    from_email: str = ""
