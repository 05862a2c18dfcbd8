"""
Test classification gate and diverter policy
"""

import pytest

from rvm_agent.core.classification import ClassificationGate
from rvm_agent.core.diverter import DiverterPolicy
from rvm_agent.core.models import Category


class TestClassificationGate:
    """Test label/confidence → category"""

    @pytest.mark.parametrize('label,confidence,expected', [
        ('plastic bottle', 0.45, Category.PLASTIC_BOTTLE),
        ('PET', 0.30, Category.PLASTIC_BOTTLE),
        ('aluminum can', 0.22, Category.METAL_CAN),
        ('易拉罐', 0.9, Category.METAL_CAN),
        ('玻璃瓶', 0.5, Category.GLASS),
        ('Glass Bottle', 0.6, Category.GLASS),
        ('plastic bottle', 0.29, Category.UNKNOWN),
        ('metal can', 0.10, Category.UNKNOWN),
        ('unknown object', 0.99, Category.UNKNOWN),
        ('', 0.9, Category.UNKNOWN),
    ])
    def test_classify(self, label, confidence, expected):
        """Test keyword match and per-category threshold"""
        result = ClassificationGate().classify(label, confidence)
        assert result.category == expected
        assert result.accepted == (expected != Category.UNKNOWN)

    def test_glass_bottle_is_glass(self):
        """Test glass matched before plastic"""
        gate = ClassificationGate()
        assert gate.match('glass bottle') == Category.GLASS
        assert gate.match('bottle') == Category.PLASTIC_BOTTLE

    def test_confidence_clamped(self):
        gate = ClassificationGate()
        assert gate.classify('can', 1.7).confidence == 1.0
        assert gate.classify('can', -0.2).confidence == 0.0
        assert gate.classify('can', -0.2).category == Category.UNKNOWN

    def test_threshold_override(self):
        gate = ClassificationGate({Category.PLASTIC_BOTTLE: 0.8})
        assert gate.classify('plastic bottle', 0.5).category == Category.UNKNOWN
        assert gate.threshold_for(Category.PLASTIC_BOTTLE) == 0.8
        assert gate.threshold_for(Category.METAL_CAN) == 0.22

    def test_manual_override(self):
        result = ClassificationGate.manual(Category.GLASS)
        assert result.category == Category.GLASS
        assert result.confidence == 1.0
        assert result.to_dict()['matchRate'] == 100

    def test_result_payload(self):
        payload = ClassificationGate().classify('plastic bottle', 0.456).to_dict()
        assert payload == {
            'materialType': 'PLASTIC_BOTTLE',
            'confidence': 0.456,
            'matchRate': 46,
            'className': 'plastic bottle',
            'accepted': True,
        }


class TestDiverterPolicy:
    """Test category routing"""

    def test_default_routes(self):
        policy = DiverterPolicy()
        assert policy.position_for(Category.METAL_CAN) == '02'
        assert policy.position_for(Category.PLASTIC_BOTTLE) == '03'
        assert policy.position_for(Category.GLASS) is None

    def test_disabled(self):
        policy = DiverterPolicy(enabled=False)
        assert policy.position_for(Category.METAL_CAN) is None

    def test_register(self):
        policy = DiverterPolicy({})
        policy.register(Category.GLASS, '04')
        assert policy.position_for(Category.GLASS) == '04'
        assert policy.position_for(Category.METAL_CAN) is None
