"""
Unit Tests for component picker support
"""
import pytest

from pilot.modules.injection.strategies import PICKER_MARKER
from pilot.modules.picker.picker_support import (
    PickerSupport,
    get_injection_script,
    get_post_message_config,
    load_picker_asset,
)
from pilot.schemas.picker import FROM_IFRAME_MESSAGES, TO_IFRAME_MESSAGES

from mocks.fake_sandbox import FakeContainerManager


def test_post_message_config():
    config = get_post_message_config()

    assert config['targetOrigin'] == '*'
    assert config['messageTypes']['fromIframe'] == list(FROM_IFRAME_MESSAGES)
    assert config['messageTypes']['toIframe'] == list(TO_IFRAME_MESSAGES)


def test_injection_script_points_at_asset():
    script = get_injection_script('https://pilot.example.com')

    assert "script.src = 'https://pilot.example.com/picker/react-component-picker.js'" in script
    assert 'picker-load-error' in script


def test_picker_asset_carries_marker():
    assert PICKER_MARKER in load_picker_asset()


class TestReactDetection:

    @pytest.mark.asyncio
    async def test_detects_react(self):
        manager = FakeContainerManager()
        manager.add_sandbox('s1')

        info = await PickerSupport(manager).detect_react('s1', 3000)

        assert info == {'hasReact': True, 'mode': 'development', 'confidence': 'high'}
        assert manager.commands[0][:2] == ['node', '-e']
        assert 'port: 3000' in manager.commands[0][2]

    @pytest.mark.asyncio
    async def test_uses_last_output_line(self):
        manager = FakeContainerManager(react_output='npm warn something\n{"hasReact": false, "error": "ECONNREFUSED"}')
        manager.add_sandbox('s1')

        info = await PickerSupport(manager).detect_react('s1')

        assert info['hasReact'] is False
        assert info['error'] == 'ECONNREFUSED'

    @pytest.mark.asyncio
    async def test_garbage_output(self):
        manager = FakeContainerManager(react_output='Segmentation fault')
        manager.add_sandbox('s1')

        info = await PickerSupport(manager).detect_react('s1')

        assert info == {'hasReact': False}

    @pytest.mark.asyncio
    async def test_missing_sandbox(self):
        info = await PickerSupport(FakeContainerManager()).detect_react('missing')

        assert info['hasReact'] is False
        assert 'Sandbox not found' in info['error']

    @pytest.mark.asyncio
    async def test_is_supported(self):
        manager = FakeContainerManager(react_output='{"hasReact": false, "confidence": "low"}')
        manager.add_sandbox('s1')

        result = await PickerSupport(manager).is_supported('s1')

        assert result['supported'] is False
        assert result['details']['confidence'] == 'low'
