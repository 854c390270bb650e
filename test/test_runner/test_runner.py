#!/usr/bin/env python
"""Testing of pypioneer.runner module with stand-in Pioneer scripts"""

import io
import os
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from pypioneer import notify
from pypioneer.notify import CallbackNotifier, NotifyError
from pypioneer.runner import (PioneerRun, RunStatus, ExitError, SpawnError,
    launch)
from pypioneer.stages import RunMode
from pypioneer._test import fake_pioneer

CONFIG = {'paths': {'library': 'lib.poin'}, 'global': {'ms1_quant': False}}


class _FullDisk(io.StringIO):
    def write(self, s):
        raise OSError(28, 'No space left on device')


class _FullDiskRun(PioneerRun):
    """A run whose log file stops accepting writes once opened"""

    def _prepare_files(self):
        super()._prepare_files()
        self._log_fp.close()
        self._log_fp = _FullDisk()


class _RunTestCase(unittest.TestCase):
    """Sets up a scratch directory and an event recorder"""

    def setUp(self):
        self._tdir = tempfile.TemporaryDirectory(prefix='unittest')
        self.tdir = Path(self._tdir.name)
        self.events = []
        self.notifier = CallbackNotifier(
            lambda event, payload: self.events.append((event, payload)))

    def tearDown(self):
        self._tdir.cleanup()

    def make_run(self, body, mode=RunMode.BUILD_LIBRARY, run_class=PioneerRun,
            **kwargs):
        kwargs.setdefault('notifier', self.notifier)
        kwargs.setdefault('workdir', self.tdir / 'run')
        kwargs.setdefault('config_dir', self.tdir / 'cfg')
        kwargs.setdefault('open_terminal', False)
        return run_class(mode, CONFIG,
            pioneer=fake_pioneer(self.tdir, body), **kwargs)

    def payloads(self, event):
        return [p for e, p in self.events if e == event]


class TestScenarios(_RunTestCase):

    def test_success_with_complete_line(self):
        run = self.make_run("print('Library build complete')")
        rc = run.run()

        self.assertEqual(rc, 0)
        self.assertIs(run.status, RunStatus.SUCCEEDED)

        final_event, final = self.events[-1]
        self.assertEqual(final_event, notify.RUN_COMPLETE)
        self.assertEqual(final,
            notify.RunComplete(RunMode.BUILD_LIBRARY, True, 0, None))

        progress = self.payloads(notify.PROGRESS)
        self.assertEqual(progress[0].stage_key, 'starting')
        self.assertEqual(progress[0].progress, 0.)
        self.assertEqual(progress[-1].stage_key, 'complete')
        self.assertEqual(progress[-1].progress, 100.)

    def test_success_without_keywords_forces_completion(self):
        run = self.make_run("print('done, bye')", mode=RunMode.SEARCH_RUN)
        self.assertEqual(run.run(), 0)

        progress = self.payloads(notify.PROGRESS)
        self.assertEqual([p.stage_key for p in progress],
            ['starting', 'complete'])
        self.assertEqual(progress[-1].stage_label, 'Completed')
        self.assertEqual(progress[-1].progress, 100.)

    def test_failure_without_keywords(self):
        run = self.make_run("""
            print('nothing useful here', file=sys.stderr)
            sys.exit(1)
            """)

        with self.assertRaises(ExitError) as cm:
            run.run()

        self.assertEqual(cm.exception.returncode, 1)
        self.assertIn('1', cm.exception.message)
        self.assertEqual(cm.exception.tail, ['stderr: nothing useful here'])
        self.assertIs(run.status, RunStatus.FAILED)

        progress = self.payloads(notify.PROGRESS)
        self.assertEqual([p.progress for p in progress], [0.])

        final_event, final = self.events[-1]
        self.assertEqual(final_event, notify.RUN_COMPLETE)
        self.assertFalse(final.success)
        self.assertEqual(final.exit_code, 1)
        self.assertEqual(final.message, 'Pioneer exited with status 1')

        # the log survives a failed run
        self.assertEqual(Path(run.log_path).read_text().splitlines(),
            ['stderr: nothing useful here'])

    def test_log_file_contents(self):
        run = self.make_run("""
            for i in range(3):
                print(f'out{i}', flush=True)
                print(f'err{i}', file=sys.stderr, flush=True)
            print('no newline at end', end='')
            """)
        run.run()

        lines = Path(run.log_path).read_text(encoding='utf-8').splitlines()
        self.assertEqual(len(lines), 7)
        self.assertEqual(
            [l for l in lines if l.startswith('stdout: ')],
            ['stdout: out0', 'stdout: out1', 'stdout: out2',
             'stdout: no newline at end'])
        self.assertEqual(
            [l for l in lines if l.startswith('stderr: ')],
            ['stderr: err0', 'stderr: err1', 'stderr: err2'])

        logged = self.payloads(notify.LOG_LINE)
        self.assertEqual(len(logged), 7)
        self.assertEqual({p.stream for p in logged}, {'stdout', 'stderr'})
        self.assertIn(notify.LogLine(RunMode.BUILD_LIBRARY, 'stderr', 'err1'),
            logged)

    def test_stage_never_regresses(self):
        run = self.make_run("""
            print('Reading FASTA')
            print('Predicting fragments with altimeter')
            print('Loading next batch')
            print('Reading more input')
            print('Saving library')
            """)
        run.run()

        keys = [p.stage_key for p in self.payloads(notify.PROGRESS)]
        self.assertEqual(keys,
            ['starting', 'prepare', 'predict', 'write', 'complete'])
        values = [p.progress for p in self.payloads(notify.PROGRESS)]
        self.assertEqual(values, sorted(values))

    def test_event_order_and_started_payload(self):
        run = self.make_run("print('hello')")
        run.run()

        names = [e for e, p in self.events]
        self.assertEqual(names[0], notify.RUN_STARTED)
        self.assertEqual(names[1], notify.PROGRESS)
        self.assertEqual(names[-1], notify.RUN_COMPLETE)

        started = self.events[0][1]
        self.assertEqual(started.mode, RunMode.BUILD_LIBRARY)
        self.assertEqual(started.log_path, str(run.log_path))
        self.assertEqual(started.config_path, str(run.config_path))
        self.assertEqual(Path(started.config_path).name,
            'buildspeclib_params.json')
        self.assertTrue(started.log_path.endswith('.log'))


class TestRunFiles(_RunTestCase):

    def test_child_arguments_and_config_file(self):
        # the stand-in echoes its arguments and the parameter file it got
        run = self.make_run("""
            print(json.dumps(sys.argv[1:]))
            with open(sys.argv[2]) as fin:
                print(fin.read().replace('\\n', ' '))
            """, mode=RunMode.SEARCH_RUN)
        run.run()

        lines = [p.line for p in self.payloads(notify.LOG_LINE)]
        self.assertEqual(json.loads(lines[0]),
            ['search', str(run.config_path)])
        self.assertEqual(json.loads(lines[1]), CONFIG)

        with open(run.config_path) as fin:
            self.assertEqual(json.load(fin), CONFIG)

    def test_config_persisted(self):
        run = self.make_run("pass")
        run.run()

        saved = self.tdir / 'cfg' / 'buildspeclib.json'
        self.assertEqual(run.persisted_path, saved)
        with open(saved) as fin:
            self.assertEqual(json.load(fin), CONFIG)
        self.assertEqual(self.events[0][1].persisted_path, str(saved))

    def test_no_persist(self):
        run = self.make_run("pass", persist=False)
        run.run()
        self.assertFalse((self.tdir / 'cfg').exists())
        self.assertIsNone(self.events[0][1].persisted_path)

    def test_default_workdir_is_kept(self):
        run = self.make_run("print('x')", workdir=None)
        try:
            run.run()
            self.assertTrue(Path(run.log_path).is_file())
            self.assertTrue(
                Path(run.workdir).name.startswith('pioneer_run_'))
        finally:
            for f in Path(run.workdir).iterdir():
                f.unlink()
            os.rmdir(run.workdir)


class TestRunErrors(_RunTestCase):

    def test_missing_executable(self):
        run = PioneerRun(RunMode.SEARCH_RUN, CONFIG,
            pioneer=str(self.tdir / 'no-such-pioneer'),
            notifier=self.notifier,
            workdir=self.tdir / 'run',
            persist=False,
            open_terminal=False)

        with self.assertRaises(SpawnError):
            run.run()

        self.assertEqual(self.events, [])
        self.assertIs(run.status, RunStatus.FAILED)

    def test_binary_not_found(self):
        with mock.patch('pypioneer.runner.locate_pioneer_binary',
                side_effect=SpawnError('not found')):
            run = PioneerRun(RunMode.SEARCH_RUN, CONFIG,
                notifier=self.notifier,
                workdir=self.tdir / 'run',
                persist=False,
                open_terminal=False)
            with self.assertRaises(SpawnError):
                run.run()

        self.assertEqual(self.events, [])
        self.assertFalse((self.tdir / 'run').exists())

    def test_rejecting_notifier_is_tolerated(self):
        def reject(event, payload):
            raise NotifyError('sink is gone')

        run = self.make_run("print('complete')",
            notifier=CallbackNotifier(reject))

        with self.assertLogs('pypioneer.runner', 'WARNING'):
            self.assertEqual(run.run(), 0)

        self.assertEqual(Path(run.log_path).read_text().splitlines(),
            ['stdout: complete'])

    def test_terminal_warning(self):
        with mock.patch('pypioneer.runner.open_terminal_tail',
                side_effect=RuntimeError('No compatible terminal found')):
            run = self.make_run("print('hi')", open_terminal=True)
            self.assertEqual(run.run(), 0)

        warnings = self.payloads(notify.TERMINAL_WARNING)
        self.assertEqual(len(warnings), 1)
        self.assertIn('No compatible terminal found', warnings[0].message)
        self.assertEqual(self.events[-1][0], notify.RUN_COMPLETE)
        self.assertTrue(self.events[-1][1].success)

    def test_log_write_failure_is_tolerated(self):
        run = self.make_run(
            "print('loading')\nprint('writing')\nprint('complete')",
            run_class=_FullDiskRun)

        with self.assertLogs('pypioneer.runner', 'WARNING') as cm:
            self.assertEqual(run.run(), 0)

        self.assertEqual(len(cm.output), 1)
        self.assertIn('Cannot append to', cm.output[0])
        self.assertEqual(len(self.payloads(notify.LOG_LINE)), 3)
        self.assertEqual(self.events[-1],
            (notify.RUN_COMPLETE,
                notify.RunComplete(RunMode.BUILD_LIBRARY, True, 0, None)))

    def test_unwritable_workdir(self):
        not_a_dir = self.tdir / 'plain_file'
        not_a_dir.write_text('')

        run = self.make_run("print('never runs')", workdir=not_a_dir)
        with self.assertRaises(OSError):
            run.run()

        self.assertIsNone(run.process)
        self.assertEqual(self.events, [])
        self.assertIs(run.status, RunStatus.FAILED)

    def test_cannot_start_twice(self):
        run = self.make_run("pass")
        run.run()
        with self.assertRaises(RuntimeError):
            run.run()

    def test_mode_from_string(self):
        run = PioneerRun('search', CONFIG, pioneer='unused')
        self.assertIs(run.mode, RunMode.SEARCH_RUN)


class TestAsyncRun(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self._tdir = tempfile.TemporaryDirectory(prefix='unittest')
        self.tdir = Path(self._tdir.name)
        self.events = []

    def tearDown(self):
        self._tdir.cleanup()

    async def test_start_returns_before_output(self):
        run = PioneerRun(RunMode.SEARCH_RUN, CONFIG,
            pioneer=fake_pioneer(self.tdir, "print('Initializing'); print('finished')"),
            notifier=CallbackNotifier(
                lambda e, p: self.events.append((e, p))),
            workdir=self.tdir / 'run',
            persist=False,
            open_terminal=False)

        started = await run.start()

        self.assertIs(run.status, RunStatus.RUNNING)
        self.assertEqual(self.events, [(notify.RUN_STARTED, started)])

        rc = await run.wait()
        self.assertEqual(rc, 0)
        self.assertTrue(run.done)
        self.assertEqual(
            [p.line for e, p in self.events if e == notify.LOG_LINE],
            ['Initializing', 'finished'])

    async def test_wait_before_start(self):
        run = PioneerRun(RunMode.SEARCH_RUN, CONFIG, pioneer='unused')
        with self.assertRaises(RuntimeError):
            await run.wait()

    async def test_killed_child_fails(self):
        if os.name == 'nt':
            self.skipTest('signals differ on Windows')

        run = PioneerRun(RunMode.BUILD_LIBRARY, CONFIG,
            pioneer=fake_pioneer(self.tdir, """
                import time
                print('Loading', flush=True)
                time.sleep(60)
                """),
            notifier=CallbackNotifier(
                lambda e, p: self.events.append((e, p))),
            workdir=self.tdir / 'run',
            persist=False,
            open_terminal=False)

        await run.start()
        run.process.kill()

        with self.assertRaises(ExitError) as cm:
            await run.wait()

        self.assertLess(cm.exception.returncode, 0)
        final = self.events[-1][1]
        self.assertFalse(final.success)
        self.assertIsNone(final.exit_code)
        self.assertEqual(final.message, 'Pioneer exited with status -1')


class TestLaunch(unittest.IsolatedAsyncioTestCase):

    async def test_launch_missing(self):
        with self.assertRaises(SpawnError):
            await launch('/definitely/not/here/pioneer', 'search', 'x.json')


if __name__ == '__main__':
    unittest.main()
