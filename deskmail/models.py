import uuid

from django.db import models

from deskmail.conf import get_setting, get_table_name


# ---------------------------------------------------------------------------
# Managers / QuerySets
# ---------------------------------------------------------------------------


class TicketQuerySet(models.QuerySet):
    def open(self):
        return self.filter(status__in=Ticket.OPEN_STATUSES)

    def matchable(self):
        """Tickets that an inbound email may be appended to without reopening."""
        return self.open().filter(is_complete=False, locked=False)

    def by_thread(self, thread_id):
        return self.filter(thread_id=thread_id)

    def by_external_ids(self, message_ids):
        return self.filter(external_ids__message_id__in=message_ids).distinct()


class TicketManager(models.Manager):
    def get_queryset(self):
        return TicketQuerySet(self.model, using=self._db)

    def open(self):
        return self.get_queryset().open()

    def matchable(self):
        return self.get_queryset().matchable()

    def by_thread(self, thread_id):
        return self.get_queryset().by_thread(thread_id)

    def by_external_ids(self, message_ids):
        return self.get_queryset().by_external_ids(message_ids)


class MailboxQuerySet(models.QuerySet):
    def active(self):
        return self.filter(active=True)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class Mailbox(models.Model):
    """An inbound email source polled over IMAP."""

    class ServiceType(models.TextChoices):
        GMAIL = "gmail", "Gmail (OAuth)"
        OTHER = "other", "Other (password)"

    name = models.CharField(max_length=255)
    username = models.CharField(max_length=255)
    password = models.CharField(max_length=255, null=True, blank=True)
    hostname = models.CharField(max_length=255)
    port = models.PositiveIntegerField(null=True, blank=True)
    tls = models.BooleanField(default=True)
    service_type = models.CharField(
        max_length=20, choices=ServiceType.choices, default=ServiceType.OTHER
    )

    # OAuth credential (gmail only)
    client_id = models.CharField(max_length=255, null=True, blank=True)
    client_secret = models.CharField(max_length=255, null=True, blank=True)
    refresh_token = models.TextField(null=True, blank=True)
    access_token = models.TextField(null=True, blank=True)
    expires_at = models.BigIntegerField(
        null=True, blank=True,
        help_text="Access token expiry, seconds since the epoch",
    )
    requires_reauth = models.BooleanField(default=False)

    active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = MailboxQuerySet.as_manager()

    class Meta:
        db_table = get_table_name("mailboxes")
        ordering = ["created_at"]
        verbose_name_plural = "Mailboxes"

    def __str__(self):
        return f"{self.name} <{self.username}>"

    @property
    def is_oauth(self):
        return self.service_type == self.ServiceType.GMAIL

    @property
    def effective_port(self):
        if self.port:
            return self.port
        return 993 if self.tls else 143


class Ticket(models.Model):
    class Status(models.TextChoices):
        NEEDS_SUPPORT = "needs_support", "Needs Support"
        IN_PROGRESS = "in_progress", "In Progress"
        HOLD = "hold", "On Hold"
        IN_REVIEW = "in_review", "In Review"
        DONE = "done", "Done"

    class Priority(models.TextChoices):
        LOW = "low", "Low"
        MEDIUM = "medium", "Medium"
        HIGH = "high", "High"

    OPEN_STATUSES = [
        Status.NEEDS_SUPPORT,
        Status.IN_PROGRESS,
        Status.HOLD,
        Status.IN_REVIEW,
    ]

    reference = models.CharField(max_length=20, unique=True, editable=False)
    email = models.CharField(max_length=500, blank=True, default="")
    name = models.CharField(max_length=255, blank=True, default="")
    title = models.CharField(max_length=1000)
    detail = models.TextField(blank=True, default="")
    status = models.CharField(
        max_length=30, choices=Status.choices, default=Status.NEEDS_SUPPORT
    )
    priority = models.CharField(
        max_length=20, choices=Priority.choices, default=Priority.LOW
    )
    is_complete = models.BooleanField(default=False)
    locked = models.BooleanField(default=False)
    from_imap = models.BooleanField(default=False)

    # Correlation
    thread_id = models.CharField(max_length=255, null=True, blank=True)
    linked_ticket = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="follow_ups",
        help_text="Predecessor ticket this one was forked from",
    )
    mailbox = models.ForeignKey(
        Mailbox,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="tickets",
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = TicketManager()

    class Meta:
        db_table = get_table_name("tickets")
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="deskmail_ticket_status_idx"),
            models.Index(fields=["email"], name="deskmail_ticket_email_idx"),
            models.Index(fields=["thread_id"], name="deskmail_ticket_thread_idx"),
            models.Index(fields=["created_at"], name="deskmail_ticket_created_idx"),
        ]

    def __str__(self):
        return f"[{self.reference}] {self.title}"

    def save(self, *args, **kwargs):
        if not self.reference:
            self.reference = self.generate_reference()
        super().save(*args, **kwargs)

    @classmethod
    def generate_reference(cls):
        """Generate a unique ticket reference like DSK-A1B2C3."""
        prefix = get_setting("TICKET_REFERENCE_PREFIX")
        while True:
            ref = f"{prefix}-{uuid.uuid4().hex[:6].upper()}"
            if not cls.objects.filter(reference=ref).exists():
                return ref

    @property
    def is_open(self):
        return self.status in self.OPEN_STATUSES

    @property
    def is_terminal(self):
        """Done, complete or locked tickets are never reopened by email."""
        return (
            self.status == self.Status.DONE
            or self.is_complete
            or self.locked
        )

    @property
    def external_message_ids(self):
        return set(self.external_ids.values_list("message_id", flat=True))

    def add_external_id(self, message_id):
        """Add a Message-ID to the correlation history. No-op if already known."""
        if not message_id:
            return False
        _, created = TicketExternalId.objects.get_or_create(
            ticket=self, message_id=message_id
        )
        return created


class TicketExternalId(models.Model):
    """One Message-ID known to belong to a ticket's conversation."""

    ticket = models.ForeignKey(
        Ticket, on_delete=models.CASCADE, related_name="external_ids"
    )
    message_id = models.CharField(max_length=500)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = get_table_name("ticket_external_ids")
        constraints = [
            models.UniqueConstraint(
                fields=["ticket", "message_id"],
                name="deskmail_unique_ticket_message_id",
            ),
        ]
        indexes = [models.Index(fields=["message_id"], name="deskmail_extid_msgid_idx")]

    def __str__(self):
        return f"{self.message_id} -> {self.ticket.reference}"


class Comment(models.Model):
    ticket = models.ForeignKey(
        Ticket, on_delete=models.CASCADE, related_name="comments"
    )
    text = models.TextField()
    reply = models.BooleanField(default=False)
    reply_email = models.CharField(max_length=500, null=True, blank=True)
    public = models.BooleanField(default=True)
    message_id = models.CharField(max_length=500, null=True, blank=True)
    in_reply_to = models.CharField(max_length=500, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = get_table_name("comments")
        ordering = ["created_at"]
        indexes = [models.Index(fields=["message_id"], name="deskmail_comment_msgid_idx")]

    def __str__(self):
        return f"Comment on {self.ticket.reference}"


class RawEmail(models.Model):
    """Copy of an inbound email that opened a ticket."""

    mailbox = models.ForeignKey(
        Mailbox,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="raw_emails",
    )
    ticket = models.ForeignKey(
        Ticket,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="raw_emails",
    )
    from_email = models.CharField(max_length=500)
    subject = models.CharField(max_length=1000)
    body = models.TextField(blank=True, default="")
    html = models.TextField(blank=True, default="")
    message_id = models.CharField(max_length=500, null=True, blank=True)
    raw = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = get_table_name("raw_emails")
        ordering = ["-created_at"]
        indexes = [models.Index(fields=["message_id"], name="deskmail_rawemail_msgid_idx")]

    def __str__(self):
        return f"{self.from_email}: {self.subject}"


class Webhook(models.Model):
    class EventType(models.TextChoices):
        TICKET_CREATED = "ticket_created", "Ticket Created"
        CUSTOMER_TICKET_CREATED = (
            "customer_ticket_created", "Ticket Created from Customer Email"
        )
        CUSTOMER_REPLY_RECEIVED = (
            "customer_reply_received", "Customer Reply Received"
        )
        TICKET_STATUS_CHANGED = "ticket_status_changed", "Ticket Status Changed"

    name = models.CharField(max_length=255)
    url = models.URLField(max_length=2000)
    type = models.CharField(max_length=50, choices=EventType.choices)
    active = models.BooleanField(default=True)
    secret = models.CharField(max_length=255, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = get_table_name("webhooks")
        ordering = ["name"]

    def __str__(self):
        return f"{self.name} ({self.type})"
