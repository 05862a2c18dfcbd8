"""
Test configuration loading
"""

import pytest
import yaml

from rvm_agent.core.models import Category
from rvm_agent.utils.config import TIMEOUT_FIELDS, AgentConfig, TimingConfig, load_config


class TestConfig:
    """Test AgentConfig"""

    def test_defaults(self):
        config = AgentConfig.from_dict(None)
        assert config.device_id == 'RVM-3101'
        assert config.topic_prefix == 'rvm/RVM-3101'
        assert config.timing.debounce == 5.0
        assert config.weight.coefficient == 988.0
        assert config.detection.category_thresholds()[Category.METAL_CAN] == 0.22

    def test_partial_sections(self, caplog):
        """Test missing keys keep defaults and unknown keys are ignored"""
        config = AgentConfig.from_dict({
            'device': {'id': 'RVM-7'},
            'timing': {'cycle_watchdog': 45, 'warp_speed': 9},
            'diverter': {'enabled': False},
            'mqtt': {'topic_prefix': 'plant/rvm7'},
        })
        assert config.device_id == 'RVM-7'
        assert config.timing.cycle_watchdog == 45
        assert config.timing.session_inactivity == 120.0
        assert not config.diverter.enabled
        assert config.topic_prefix == 'plant/rvm7'
        assert 'warp_speed' in caplog.text

    def test_load_config(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump({
            'device': {'id': 'RVM-9'},
            'detection': {'thresholds': {'glass': 0.5}},
            'diverter': {'positions': {'METAL_CAN': '05'}},
        }), encoding='utf-8')

        config = load_config(str(path))
        assert config.device_id == 'RVM-9'
        assert config.detection.category_thresholds() == {Category.GLASS: 0.5}
        assert config.diverter.category_positions() == {Category.METAL_CAN: '05'}

    def test_unknown_category_rejected(self):
        config = AgentConfig.from_dict({'detection': {'thresholds': {'paper': 0.5}}})
        with pytest.raises(ValueError):
            config.detection.category_thresholds()

    def test_immediate_timing(self):
        """Test delays are zeroed while timeouts keep their defaults"""
        timing = TimingConfig.immediate(debounce=0.5)
        defaults = TimingConfig()
        assert timing.debounce == 0.5
        assert timing.compactor_run == 0
        assert timing.feedback_delay == 0
        for name in TIMEOUT_FIELDS:
            assert getattr(timing, name) == getattr(defaults, name)
