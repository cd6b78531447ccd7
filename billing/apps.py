from django.apps import AppConfig


class BillingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'billing'

    def ready(self):
        import stripe

        from billing import config
        from billing import signals  # noqa: F401

        stripe.max_network_retries = int(config.get("GATEWAY_MAX_NETWORK_RETRIES"))
