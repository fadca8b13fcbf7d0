from django.apps import AppConfig


class WorkersConfig(AppConfig):
    name = "modules.workers"
    label = "workers"
