from django.apps import AppConfig


class CheckoutConfig(AppConfig):
    name = "apps.checkout"
    label = "checkout"
    default_auto_field = "django.db.models.BigAutoField"

    def ready(self):
        from . import providers

        providers.install(providers.build_services())
