"""
Unit Tests for the session setup orchestrator
The sandbox runtime is the in-memory fake; readiness uses httpx.MockTransport.
"""
import asyncio

import pytest

from pilot.core.exceptions import InvalidRepositoryUrlError, SessionNotFoundError, SandboxCreationError
from pilot.modules.injection.strategies import PICKER_MARKER
from pilot.modules.orchestrator.session_setup import parse_repo_slug
from pilot.modules.sandbox.container_manager import ExecResult
from pilot.services.progress_store import COMPLETED_ERROR_MESSAGE, COMPLETED_SUCCESS_MESSAGE
from pilot.services.session_store import BuildStatus

from conftest import NEXT_APP_LAYOUT, REPO_URL, build_orchestrator, refused_probe

LAYOUT = '/workspace/repo/app/layout.tsx'
STATUS_ORDER = [BuildStatus.IDLE, BuildStatus.CLONING, BuildStatus.BUILDING, BuildStatus.RUNNING]


async def wait_for_completion(progress_store, execution_id, rounds=500):
    for _ in range(rounds):
        if progress_store.is_completed(execution_id):
            return
        await asyncio.sleep(0)
    raise AssertionError(f'execution {execution_id} never completed')


class TestParseRepoSlug:

    @pytest.mark.parametrize('url,slug', [
        ('https://github.com/acme/storefront', 'acme/storefront'),
        ('https://github.com/acme/storefront.git', 'acme/storefront'),
        ('https://github.com/acme/storefront/', 'acme/storefront'),
        ('git@github.com:acme/storefront.git', 'acme/storefront'),
        ('acme/storefront', 'acme/storefront'),
        ('acme/storefront.git', 'acme/storefront'),
    ])
    def test_valid_urls(self, url, slug):
        assert parse_repo_slug(url) == (slug, 'storefront')

    @pytest.mark.parametrize('url', ['https://gitlab.com/acme/storefront', 'not a url', '',
                                     'acme/storefront/tree/main'])
    def test_invalid_urls(self, url):
        with pytest.raises(InvalidRepositoryUrlError):
            parse_repo_slug(url)


class TestSetupRepository:

    @pytest.mark.asyncio
    async def test_happy_path(self, orchestrator, fake_manager, session_store):
        result = await orchestrator.setup_repository(REPO_URL, session_id='s1')

        assert result.success is True
        assert result.repo_name == 'storefront'
        assert result.framework == 'Next.js'
        assert result.preview_port == 3001
        assert result.preview_url == 'http://localhost:3001'
        assert result.warnings == []

        session = session_store.get_session('s1')
        assert session.build_status == BuildStatus.RUNNING
        assert session.preview_ready is True
        assert session.picker_injected is True
        assert session.container_id == 'container-s1'
        assert fake_manager.create_attempts == [{3000: 3001}]

        commands = fake_manager.commands
        assert ['gh', 'repo', 'clone', 'acme/storefront', '/workspace/repo', '--', '--depth=1'] in commands
        assert ['sh', '-c', 'npm install'] in commands
        assert ['sh', '-c', 'npm run build'] in commands
        assert ['background', 'npm run dev -- -H 0.0.0.0 -p 3000'] in commands
        assert PICKER_MARKER in fake_manager.fs('s1')[LAYOUT]

    @pytest.mark.asyncio
    async def test_bare_slug_is_cloned(self, orchestrator, fake_manager):
        result = await orchestrator.setup_repository('acme/storefront', session_id='s1')

        assert result.success is True
        assert result.repo_name == 'storefront'
        assert ['gh', 'repo', 'clone', 'acme/storefront', '/workspace/repo', '--', '--depth=1'] \
            in fake_manager.commands

    @pytest.mark.asyncio
    async def test_statuses_only_move_forward(self, orchestrator, session_store):
        seen = []
        session_store.subscribe('s1', lambda s: seen.append(s.build_status))

        await orchestrator.setup_repository(REPO_URL, session_id='s1')

        indexes = [STATUS_ORDER.index(status) for status in seen]
        assert indexes == sorted(indexes)
        assert seen[-1] == BuildStatus.RUNNING

    @pytest.mark.asyncio
    async def test_progress_is_reported(self, orchestrator, progress_store):
        progress_store.create('exec-1')

        await orchestrator.setup_repository(REPO_URL, session_id='s1', execution_id='exec-1')

        texts = [m.message for m in progress_store.get_messages('exec-1')]
        assert 'Cloning acme/storefront' in texts
        assert texts[-1] == COMPLETED_SUCCESS_MESSAGE
        assert progress_store.is_completed('exec-1')

    @pytest.mark.asyncio
    async def test_session_id_generated_when_omitted(self, orchestrator, session_store):
        result = await orchestrator.setup_repository(REPO_URL)

        assert result.success is True
        assert session_store.get_session(result.session_id) is not None

    @pytest.mark.asyncio
    async def test_invalid_url_fails_without_session(self, orchestrator, session_store, fake_manager):
        result = await orchestrator.setup_repository('https://example.com/nope', session_id='s1')

        assert result.success is False
        assert 'Invalid GitHub repository URL' in result.error
        assert session_store.get_session('s1') is None
        assert fake_manager.create_attempts == []

    @pytest.mark.asyncio
    async def test_clone_failure_marks_session_failed(self, orchestrator, fake_manager,
                                                      session_store, progress_store):
        fake_manager.clone_succeeds = False
        progress_store.create('exec-1')

        result = await orchestrator.setup_repository(REPO_URL, session_id='s1', execution_id='exec-1')

        assert result.success is False
        assert 'Failed to clone repository' in result.error
        session = session_store.get_session('s1')
        assert session.build_status == BuildStatus.FAILED
        assert 'Could not resolve to a Repository' in session.error
        assert progress_store.get_messages('exec-1')[-1].message == COMPLETED_ERROR_MESSAGE

    @pytest.mark.asyncio
    async def test_readiness_timeout_marks_session_failed(self, fake_manager, session_store,
                                                          progress_store):
        orchestrator = build_orchestrator(fake_manager, session_store, progress_store,
                                          refused_probe(attempts=4))

        result = await orchestrator.setup_repository(REPO_URL, session_id='s1')

        assert result.success is False
        assert 'timed out' in result.error
        assert 'port 3001' in result.error
        session = session_store.get_session('s1')
        assert session.build_status == BuildStatus.FAILED
        assert session.preview_ready is False
        # Failed sandboxes stay up for inspection until cleanup
        assert fake_manager.has_sandbox('s1')

    @pytest.mark.asyncio
    async def test_install_and_build_failures_are_warnings(self, fake_manager, orchestrator,
                                                           session_store):
        fake_manager.shell_results = {
            'npm install': ExecResult('', 'ERESOLVE unable to resolve dependency tree', 1),
            'npm run build': ExecResult('', 'Type error', 1),
        }

        result = await orchestrator.setup_repository(REPO_URL, session_id='s1')

        assert result.success is True
        assert result.warnings == [
            'Installing dependencies exited with code 1',
            'Building project exited with code 1',
        ]
        assert session_store.get_session('s1').build_status == BuildStatus.RUNNING

    @pytest.mark.asyncio
    async def test_injection_failure_is_a_warning(self, fake_manager, orchestrator, session_store):
        fake_manager.repo_files = {'package.json': '{"dependencies": {"next": "14"}}'}

        result = await orchestrator.setup_repository(REPO_URL, session_id='s1')

        assert result.success is True
        assert result.warnings[0].startswith('Picker injection failed')
        assert session_store.get_session('s1').picker_injected is False

    @pytest.mark.asyncio
    async def test_bound_host_port_is_skipped(self, fake_manager, orchestrator, session_store):
        fake_manager.bound_ports = {3001}

        result = await orchestrator.setup_repository(REPO_URL, session_id='s1')

        assert result.success is True
        assert result.preview_port == 3002
        assert fake_manager.create_attempts == [{3000: 3001}, {3000: 3002}]
        assert orchestrator.port_allocator.reserved == set()

    @pytest.mark.asyncio
    async def test_all_ports_bound_fails_setup(self, fake_manager, orchestrator, session_store):
        fake_manager.bound_ports = {3001, 3002, 3003}

        result = await orchestrator.setup_repository(REPO_URL, session_id='s1')

        assert result.success is False
        assert 'No free host port' in result.error
        assert session_store.get_session('s1').build_status == BuildStatus.FAILED

    @pytest.mark.asyncio
    async def test_sandbox_creation_failure(self, fake_manager, orchestrator, session_store):
        fake_manager.create_error = SandboxCreationError('out of disk space or memory')

        result = await orchestrator.setup_repository(REPO_URL, session_id='s1')

        assert result.success is False
        assert session_store.get_session('s1').build_status == BuildStatus.FAILED

    @pytest.mark.asyncio
    async def test_concurrent_setups_get_distinct_ports(self, orchestrator):
        first, second = await asyncio.gather(
            orchestrator.setup_repository(REPO_URL, session_id='s1'),
            orchestrator.setup_repository(REPO_URL, session_id='s2'),
        )

        assert {first.preview_port, second.preview_port} == {3001, 3002}


class TestTrackedSetup:

    @pytest.mark.asyncio
    async def test_duplicate_request_attaches_to_running_execution(self, orchestrator, progress_store):
        first = orchestrator.start_tracked_setup(REPO_URL)
        second = orchestrator.start_tracked_setup(REPO_URL)

        assert first['attached'] is False
        assert second['attached'] is True
        assert second['executionId'] == first['executionId']
        assert second['sessionId'] == first['sessionId']

        await wait_for_completion(progress_store, first['executionId'])

    @pytest.mark.asyncio
    async def test_new_execution_after_completion(self, orchestrator, progress_store, session_store):
        first = orchestrator.start_tracked_setup(REPO_URL)
        await wait_for_completion(progress_store, first['executionId'])
        assert session_store.get_session(first['sessionId']).build_status == BuildStatus.RUNNING

        second = orchestrator.start_tracked_setup(REPO_URL)

        assert second['attached'] is False
        assert second['executionId'] != first['executionId']
        await wait_for_completion(progress_store, second['executionId'])

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_setups(self, orchestrator):
        orchestrator.start_tracked_setup(REPO_URL)

        await orchestrator.shutdown()

        assert orchestrator._tasks == set()


class TestCleanup:

    @pytest.mark.asyncio
    async def test_cleanup_rolls_back_and_destroys(self, orchestrator, fake_manager, session_store):
        await orchestrator.setup_repository(REPO_URL, session_id='s1')
        files_before = dict(fake_manager.fs('s1'))

        report = await orchestrator.cleanup_session('s1')

        assert report.succeeded is True
        assert fake_manager.destroyed == ['s1']
        assert session_store.get_session('s1') is None
        assert PICKER_MARKER in files_before[LAYOUT]
        restore_steps = [o.step for o in report.outcomes if o.step.startswith('restore:')]
        assert restore_steps == [f'restore:{LAYOUT}']

    @pytest.mark.asyncio
    async def test_rollback_restores_layout_before_destroy(self, orchestrator, fake_manager):
        await orchestrator.setup_repository(REPO_URL, session_id='s1')

        await orchestrator.injector.rollback('s1')

        assert fake_manager.fs('s1')[LAYOUT] == NEXT_APP_LAYOUT

    @pytest.mark.asyncio
    async def test_cleanup_unknown_session_raises(self, orchestrator):
        with pytest.raises(SessionNotFoundError):
            await orchestrator.cleanup_session('missing')

    @pytest.mark.asyncio
    async def test_cleanup_stale_sessions(self, orchestrator, fake_manager, session_store, clock):
        await orchestrator.setup_repository(REPO_URL, session_id='old')
        clock.advance(3000)
        await orchestrator.setup_repository(REPO_URL, session_id='fresh')
        clock.advance(700)

        cleaned = await orchestrator.cleanup_stale_sessions(3600)

        assert cleaned == ['old']
        assert fake_manager.destroyed == ['old']
        assert session_store.get_session('fresh') is not None
        assert await orchestrator.cleanup_stale_sessions(3600) == []

    @pytest.mark.asyncio
    async def test_reap_orphans_delegates(self, orchestrator, fake_manager):
        fake_manager.add_sandbox('ghost')

        report = await orchestrator.reap_orphans()

        assert report.succeeded is True
        assert fake_manager.destroyed == ['ghost']
