from django.apps import AppConfig


class LocksConfig(AppConfig):
    name = "modules.locks"
    label = "locks"
