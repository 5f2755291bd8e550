"""
Unit Tests for the session and cleanup endpoints
"""
import pytest
from httpx import AsyncClient

from conftest import REPO_URL


class TestSessionSetupEndpoint:

    @pytest.mark.asyncio
    async def test_setup_runs_to_completion(self, client: AsyncClient, api_prefix):
        response = await client.post(f'{api_prefix}/sessions', json={'repoUrl': REPO_URL, 'sessionId': 's1'})

        assert response.status_code == 200
        data = response.json()
        assert data['success'] is True
        assert data['sessionId'] == 's1'
        assert data['framework'] == 'Next.js'
        assert data['previewPort'] == 3001
        assert data['previewReady'] is True

    @pytest.mark.asyncio
    async def test_setup_failure_is_reported_in_body(self, client: AsyncClient, api_prefix, fake_manager):
        fake_manager.clone_succeeds = False

        response = await client.post(f'{api_prefix}/sessions', json={'repoUrl': REPO_URL, 'sessionId': 's1'})

        assert response.status_code == 200
        data = response.json()
        assert data['success'] is False
        assert 'Failed to clone repository' in data['error']

    @pytest.mark.asyncio
    async def test_background_setup_returns_execution(self, client: AsyncClient, api_prefix, services):
        response = await client.post(f'{api_prefix}/sessions', json={'repoUrl': REPO_URL, 'background': True})

        assert response.status_code == 200
        data = response.json()
        assert data['attached'] is False
        assert services.progress_store.exists(data['executionId'])
        await services.orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_missing_repo_url_is_rejected(self, client: AsyncClient, api_prefix):
        response = await client.post(f'{api_prefix}/sessions', json={})

        assert response.status_code == 422


class TestSessionStatusEndpoint:

    @pytest.mark.asyncio
    async def test_status_of_running_session(self, client: AsyncClient, api_prefix):
        await client.post(f'{api_prefix}/sessions', json={'repoUrl': REPO_URL, 'sessionId': 's1'})

        response = await client.get(f'{api_prefix}/sessions/s1/status')

        assert response.status_code == 200
        assert response.json() == {
            'sessionId': 's1',
            'buildStatus': 'running',
            'previewReady': True,
            'repoName': 'storefront',
            'framework': 'Next.js',
        }

    @pytest.mark.asyncio
    async def test_unknown_session_is_404(self, client: AsyncClient, api_prefix):
        response = await client.get(f'{api_prefix}/sessions/missing/status')

        assert response.status_code == 404
        assert response.json()['detail'] == 'Session not found'


class TestCleanupEndpoints:

    @pytest.mark.asyncio
    async def test_cleanup_session(self, client: AsyncClient, api_prefix, fake_manager):
        await client.post(f'{api_prefix}/sessions', json={'repoUrl': REPO_URL, 'sessionId': 's1'})

        response = await client.delete(f'{api_prefix}/sessions/s1/cleanup')

        assert response.status_code == 200
        data = response.json()
        assert data['success'] is True
        assert data['degraded'] is False
        assert fake_manager.destroyed == ['s1']
        assert (await client.get(f'{api_prefix}/sessions/s1/status')).status_code == 404

    @pytest.mark.asyncio
    async def test_cleanup_unknown_session_is_404(self, client: AsyncClient, api_prefix):
        response = await client.delete(f'{api_prefix}/sessions/missing/cleanup')

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_cleanup_all_keeps_active_sessions(self, client: AsyncClient, api_prefix):
        await client.post(f'{api_prefix}/sessions', json={'repoUrl': REPO_URL, 'sessionId': 's1'})

        response = await client.post(f'{api_prefix}/sessions/cleanup-all')

        assert response.status_code == 200
        assert response.json() == {'success': True, 'cleaned': 0, 'sessionIds': []}

    @pytest.mark.asyncio
    async def test_cleanup_all_with_threshold_override(self, client: AsyncClient, api_prefix, services):
        services.session_store.create_session('idle')

        response = await client.post(f'{api_prefix}/sessions/cleanup-all',
                                     json={'maxInactivitySeconds': 0})

        assert response.json()['sessionIds'] == ['idle']
        assert services.session_store.get_session('idle') is None

    @pytest.mark.asyncio
    async def test_orphan_cleanup(self, client: AsyncClient, api_prefix, fake_manager):
        fake_manager.add_sandbox('ghost')

        response = await client.post(f'{api_prefix}/cleanup')

        assert response.status_code == 200
        assert response.json()['success'] is True
        assert fake_manager.destroyed == ['ghost']


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get('/health')

    assert response.status_code == 200
    data = response.json()
    assert data['status'] == 'healthy'
    assert data['sessions'] == 0
    assert data['reaper']['running'] is False
