"""
Test timer supervisor
"""

import asyncio

from rvm_agent.core.watchdog import TimerClass, TimerSupervisor


class TestTimerSupervisor:
    """Test TimerSupervisor"""

    def test_restart_replaces_timer(self):
        """Test only the latest instance of a class fires"""
        fired = []

        async def scenario():
            timers = TimerSupervisor()
            timers.start(TimerClass.DEBOUNCE, 0.02, fired.append, 'first')
            timers.start(TimerClass.DEBOUNCE, 0.02, fired.append, 'second')
            await asyncio.sleep(0.1)
            return timers.get_stats()

        stats = asyncio.run(scenario())
        assert fired == ['second']
        assert stats['fired'] == 1
        assert stats['cancelled'] == 1

    def test_cancel(self):
        fired = []

        async def scenario():
            timers = TimerSupervisor()
            timers.start(TimerClass.CYCLE_WATCHDOG, 0.02, fired.append, 'x')
            assert timers.is_active(TimerClass.CYCLE_WATCHDOG)
            assert timers.cancel(TimerClass.CYCLE_WATCHDOG) is True
            assert timers.cancel(TimerClass.CYCLE_WATCHDOG) is False
            assert not timers.is_active(TimerClass.CYCLE_WATCHDOG)
            await asyncio.sleep(0.05)

        asyncio.run(scenario())
        assert fired == []

    def test_classes_are_independent(self):
        fired = []

        async def scenario():
            timers = TimerSupervisor()
            timers.start(TimerClass.SESSION_INACTIVITY, 0.01, fired.append, 'inactivity')
            timers.start(TimerClass.SESSION_MAX_DURATION, 0.01, fired.append, 'max')
            timers.cancel(TimerClass.SESSION_MAX_DURATION)
            await asyncio.sleep(0.05)

        asyncio.run(scenario())
        assert fired == ['inactivity']

    def test_coroutine_callback_tracked(self):
        done = []

        async def on_expired(tag):
            await asyncio.sleep(0.01)
            done.append(tag)

        async def scenario():
            timers = TimerSupervisor()
            timers.start(TimerClass.CYCLE_WATCHDOG, 0, on_expired, 'watchdog')
            await asyncio.sleep(0.01)
            await timers.join()
            return timers.get_stats()

        stats = asyncio.run(scenario())
        assert done == ['watchdog']
        assert stats['running_tasks'] == 0

    def test_callback_error_is_contained(self, caplog):
        """Test a failing callback is logged and counted"""
        def broken():
            raise RuntimeError('boom')

        async def failing():
            raise ValueError('bad')

        async def scenario():
            timers = TimerSupervisor()
            timers.start(TimerClass.DEBOUNCE, 0, broken)
            timers.start(TimerClass.CYCLE_WATCHDOG, 0, failing)
            await asyncio.sleep(0.01)
            await timers.join()
            return timers.get_stats()

        stats = asyncio.run(scenario())
        assert stats['errors'] == 2
        assert 'callback failed' in caplog.text

    def test_shutdown_cancels_everything(self):
        fired = []

        async def scenario():
            timers = TimerSupervisor()
            for timer_class in TimerClass:
                timers.start(timer_class, 0.02, fired.append, timer_class)
            await timers.shutdown()
            await asyncio.sleep(0.05)
            return timers.get_stats()

        stats = asyncio.run(scenario())
        assert fired == []
        assert stats['active'] == []
