from django.apps import AppConfig


class DeskmailConfig(AppConfig):
    name = "deskmail"
    verbose_name = "Deskmail Inbound Email"
    default_auto_field = "django.db.models.BigAutoField"

    def ready(self):
        import deskmail.handlers  # noqa: F401 - connects signal handlers
