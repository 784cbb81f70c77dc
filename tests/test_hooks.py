"""Tests for lifecycle hook runners."""

from __future__ import annotations

from orgmigrate.services.hooks import ON_AFTER_UPDATE, ON_BEFORE_UPDATE, CallbackHookRunner, NullHookRunner


class TestCallbackHookRunner:
    """Event dispatch"""

    def test_scoped_and_global_handlers(self):
        runner = CallbackHookRunner()
        seen = []
        runner.register(ON_BEFORE_UPDATE, lambda event, name: seen.append(("any", name)) or True)
        runner.register(ON_BEFORE_UPDATE, lambda event, name: seen.append(("account", name)) or True, "Account")

        assert runner.run_event(ON_BEFORE_UPDATE, "Account")
        assert runner.run_event(ON_BEFORE_UPDATE, "Contact")
        assert seen == [("any", "Account"), ("account", "Account"), ("any", "Contact")]

    def test_unhandled_event(self):
        runner = CallbackHookRunner()

        assert not runner.run_event(ON_AFTER_UPDATE, "Account")
        assert runner.calls == [(ON_AFTER_UPDATE, "Account")]

    def test_null_runner(self):
        assert not NullHookRunner().run_event(ON_AFTER_UPDATE)
