from adaptrain.schemas.health import GpuInfo
from adaptrain.services import monitoring


class TestMonitoring:
    def test_cpu_utilization(self):
        assert monitoring.cpu_utilization() >= 0.0

    def test_gpu_utilization_without_gpus(self, monkeypatch):
        monkeypatch.setattr(monitoring, "get_gpu_info", lambda: [])
        assert monitoring.gpu_utilization() == 0.0

    def test_gpu_utilization_is_mean(self, monkeypatch):
        gpus = [
            GpuInfo(index=i, name="gpu", memory_total_mb=1, memory_used_mb=0, utilization_pct=pct)
            for i, pct in enumerate([20.0, 60.0])
        ]
        monkeypatch.setattr(monitoring, "get_gpu_info", lambda: gpus)
        assert monitoring.gpu_utilization() == 40.0

    def test_gpu_info_is_a_list(self):
        assert isinstance(monitoring.get_gpu_info(), list)
