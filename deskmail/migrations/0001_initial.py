import django.db.models.deletion
from django.db import migrations, models

from deskmail.conf import get_table_name


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        # Mailbox
        migrations.CreateModel(
            name="Mailbox",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("name", models.CharField(max_length=255)),
                ("username", models.CharField(max_length=255)),
                (
                    "password",
                    models.CharField(blank=True, max_length=255, null=True),
                ),
                ("hostname", models.CharField(max_length=255)),
                ("port", models.PositiveIntegerField(blank=True, null=True)),
                ("tls", models.BooleanField(default=True)),
                (
                    "service_type",
                    models.CharField(
                        choices=[
                            ("gmail", "Gmail (OAuth)"),
                            ("other", "Other (password)"),
                        ],
                        default="other",
                        max_length=20,
                    ),
                ),
                (
                    "client_id",
                    models.CharField(blank=True, max_length=255, null=True),
                ),
                (
                    "client_secret",
                    models.CharField(blank=True, max_length=255, null=True),
                ),
                ("refresh_token", models.TextField(blank=True, null=True)),
                ("access_token", models.TextField(blank=True, null=True)),
                (
                    "expires_at",
                    models.BigIntegerField(
                        blank=True,
                        help_text="Access token expiry, seconds since the epoch",
                        null=True,
                    ),
                ),
                ("requires_reauth", models.BooleanField(default=False)),
                ("active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": get_table_name("mailboxes"),
                "ordering": ["created_at"],
                "verbose_name_plural": "Mailboxes",
            },
        ),
        # Ticket
        migrations.CreateModel(
            name="Ticket",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                (
                    "reference",
                    models.CharField(editable=False, max_length=20, unique=True),
                ),
                ("email", models.CharField(blank=True, default="", max_length=500)),
                ("name", models.CharField(blank=True, default="", max_length=255)),
                ("title", models.CharField(max_length=1000)),
                ("detail", models.TextField(blank=True, default="")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("needs_support", "Needs Support"),
                            ("in_progress", "In Progress"),
                            ("hold", "On Hold"),
                            ("in_review", "In Review"),
                            ("done", "Done"),
                        ],
                        default="needs_support",
                        max_length=30,
                    ),
                ),
                (
                    "priority",
                    models.CharField(
                        choices=[
                            ("low", "Low"),
                            ("medium", "Medium"),
                            ("high", "High"),
                        ],
                        default="low",
                        max_length=20,
                    ),
                ),
                ("is_complete", models.BooleanField(default=False)),
                ("locked", models.BooleanField(default=False)),
                ("from_imap", models.BooleanField(default=False)),
                (
                    "thread_id",
                    models.CharField(blank=True, max_length=255, null=True),
                ),
                (
                    "linked_ticket",
                    models.ForeignKey(
                        blank=True,
                        help_text="Predecessor ticket this one was forked from",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="follow_ups",
                        to="deskmail.ticket",
                    ),
                ),
                (
                    "mailbox",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="tickets",
                        to="deskmail.mailbox",
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": get_table_name("tickets"),
                "ordering": ["-created_at"],
            },
        ),
        migrations.AddIndex(
            model_name="ticket",
            index=models.Index(
                fields=["status"], name="deskmail_ticket_status_idx"
            ),
        ),
        migrations.AddIndex(
            model_name="ticket",
            index=models.Index(
                fields=["email"], name="deskmail_ticket_email_idx"
            ),
        ),
        migrations.AddIndex(
            model_name="ticket",
            index=models.Index(
                fields=["thread_id"], name="deskmail_ticket_thread_idx"
            ),
        ),
        migrations.AddIndex(
            model_name="ticket",
            index=models.Index(
                fields=["created_at"], name="deskmail_ticket_created_idx"
            ),
        ),
        # TicketExternalId
        migrations.CreateModel(
            name="TicketExternalId",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("message_id", models.CharField(max_length=500)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "ticket",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="external_ids",
                        to="deskmail.ticket",
                    ),
                ),
            ],
            options={
                "db_table": get_table_name("ticket_external_ids"),
            },
        ),
        migrations.AddIndex(
            model_name="ticketexternalid",
            index=models.Index(
                fields=["message_id"], name="deskmail_extid_msgid_idx"
            ),
        ),
        migrations.AddConstraint(
            model_name="ticketexternalid",
            constraint=models.UniqueConstraint(
                fields=("ticket", "message_id"),
                name="deskmail_unique_ticket_message_id",
            ),
        ),
        # Comment
        migrations.CreateModel(
            name="Comment",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("text", models.TextField()),
                ("reply", models.BooleanField(default=False)),
                (
                    "reply_email",
                    models.CharField(blank=True, max_length=500, null=True),
                ),
                ("public", models.BooleanField(default=True)),
                (
                    "message_id",
                    models.CharField(blank=True, max_length=500, null=True),
                ),
                (
                    "in_reply_to",
                    models.CharField(blank=True, max_length=500, null=True),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "ticket",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="comments",
                        to="deskmail.ticket",
                    ),
                ),
            ],
            options={
                "db_table": get_table_name("comments"),
                "ordering": ["created_at"],
            },
        ),
        migrations.AddIndex(
            model_name="comment",
            index=models.Index(
                fields=["message_id"], name="deskmail_comment_msgid_idx"
            ),
        ),
        # RawEmail
        migrations.CreateModel(
            name="RawEmail",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("from_email", models.CharField(max_length=500)),
                ("subject", models.CharField(max_length=1000)),
                ("body", models.TextField(blank=True, default="")),
                ("html", models.TextField(blank=True, default="")),
                (
                    "message_id",
                    models.CharField(blank=True, max_length=500, null=True),
                ),
                ("raw", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "mailbox",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="raw_emails",
                        to="deskmail.mailbox",
                    ),
                ),
                (
                    "ticket",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="raw_emails",
                        to="deskmail.ticket",
                    ),
                ),
            ],
            options={
                "db_table": get_table_name("raw_emails"),
                "ordering": ["-created_at"],
            },
        ),
        migrations.AddIndex(
            model_name="rawemail",
            index=models.Index(
                fields=["message_id"], name="deskmail_rawemail_msgid_idx"
            ),
        ),
        # Webhook
        migrations.CreateModel(
            name="Webhook",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("name", models.CharField(max_length=255)),
                ("url", models.URLField(max_length=2000)),
                (
                    "type",
                    models.CharField(
                        choices=[
                            ("ticket_created", "Ticket Created"),
                            (
                                "customer_ticket_created",
                                "Ticket Created from Customer Email",
                            ),
                            (
                                "customer_reply_received",
                                "Customer Reply Received",
                            ),
                            ("ticket_status_changed", "Ticket Status Changed"),
                        ],
                        max_length=50,
                    ),
                ),
                ("active", models.BooleanField(default=True)),
                (
                    "secret",
                    models.CharField(blank=True, max_length=255, null=True),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": get_table_name("webhooks"),
                "ordering": ["name"],
            },
        ),
    ]
