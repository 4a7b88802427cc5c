from __future__ import annotations

import importlib
import unittest


class ImportsBootTestCase(unittest.TestCase):
    def test_import_create_app(self):
        module = importlib.import_module("app")
        create_app = getattr(module, "create_app", None)
        self.assertTrue(callable(create_app))

    def test_import_segments(self):
        for name in (
            "app.segments.segment_functions",
            "app.segments.segment_orders",
            "app.segments.segment_banking",
            "app.segments.segment_notifications",
            "app.segments.segment_webhooks",
        ):
            self.assertIsNotNone(importlib.import_module(name))

    def test_import_worker_modules(self):
        tasks = importlib.import_module("app.tasks.workflow_tasks")
        self.assertTrue(hasattr(tasks, "schedule_pickup_task"))
        self.assertTrue(hasattr(tasks, "process_courier_event_task"))
        celery_module = importlib.import_module("app.celery_app")
        self.assertTrue(callable(getattr(celery_module, "create_celery_app", None)))


if __name__ == "__main__":
    unittest.main()
