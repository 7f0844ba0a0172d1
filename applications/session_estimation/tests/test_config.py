"""
Tests for EstimationConfig validation and YAML round-tripping.
"""
import pytest
import yaml

from applications.session_estimation.config import DEFAULT_CONFIG_PATH, ConfigError, EstimationConfig
from applications.session_estimation.model_definitions import Task


class TestDefaults:

    def test_default_values(self):
        config = EstimationConfig()
        assert config.chain_count == 4
        assert config.draws_per_chain == 4000
        assert config.warmup_draws == 2000
        assert config.attempt_budget == 100
        assert config.rhat_threshold == 1.01
        assert config.concurrency == 4
        assert config.outlier_z_cutoff == 1.96
        assert config.engine == "cmdstan"
        assert config.results_dir is not None

    def test_shipped_config_loads(self):
        assert DEFAULT_CONFIG_PATH.exists()
        config = EstimationConfig.from_yaml(DEFAULT_CONFIG_PATH)
        assert config.rhat_threshold == 1.01
        assert config.attempt_budget == 100

    def test_sampler_config(self):
        sampler = EstimationConfig(chain_count=3, draws_per_chain=10, warmup_draws=5).sampler_config()
        assert (sampler.chains, sampler.draws, sampler.warmup) == (3, 10, 5)


class TestValidation:

    @pytest.mark.parametrize(
        "overrides",
        [
            {"chain_count": 1},
            {"draws_per_chain": 0},
            {"warmup_draws": -1},
            {"attempt_budget": 0},
            {"rhat_threshold": 1.0},
            {"concurrency": 0},
            {"outlier_z_cutoff": 0.0},
            {"engine": "gibbs"},
            {"convergence_params": {"discounting": ["risk_exponent"]}},
        ],
    )
    def test_hard_failures(self, overrides):
        with pytest.raises(ConfigError):
            EstimationConfig(**overrides)

    def test_soft_warnings(self):
        config = EstimationConfig(draws_per_chain=100, rhat_threshold=1.2)
        warnings = config.validate()
        assert any("draws_per_chain" in w for w in warnings)
        assert any("rhat_threshold" in w for w in warnings)
        assert any("No trial tables" in w for w in warnings)

    def test_no_warnings_when_configured(self, tmp_path):
        config = EstimationConfig(discounting_data=str(tmp_path / "d.csv"))
        assert config.validate() == []


class TestModels:

    def test_model_for_default(self):
        model = EstimationConfig().model_for("risk_ambiguity")
        assert model.convergence_params == ("risk_exponent", "ambiguity_weight")

    def test_convergence_override(self):
        config = EstimationConfig(convergence_params={"risk_ambiguity": ["risk_exponent"]})
        assert config.model_for(Task.RISK_AMBIGUITY).convergence_params == ("risk_exponent",)
        assert config.model_for(Task.DISCOUNTING).convergence_params == (
            "log_discount_rate",
            "log_inverse_temperature",
        )

    def test_task_data(self):
        config = EstimationConfig(risk_ambiguity_data="r.csv")
        assert config.task_data() == {"risk_ambiguity": "r.csv"}


class TestSerialization:

    def test_yaml_round_trip(self, tmp_path):
        config = EstimationConfig(
            concurrency=2,
            seed=7,
            results_dir=str(tmp_path / "out"),
            convergence_params={"discounting": ["log_discount_rate"]},
        )
        path = tmp_path / "config.yaml"
        config.save_yaml(path)
        assert EstimationConfig.from_yaml(path) == config

    def test_from_dict_ignores_unknown_keys(self):
        config = EstimationConfig.from_dict({"concurrency": 3, "unknown_key": 1})
        assert config.concurrency == 3

    def test_missing_file_falls_back_to_defaults(self, tmp_path):
        config = EstimationConfig.from_yaml(tmp_path / "missing.yaml")
        assert config == EstimationConfig()

    def test_null_convergence_params(self, tmp_path):
        path = tmp_path / "config.yaml"
        with open(path, "w") as f:
            yaml.dump({"convergence_params": None}, f)
        assert EstimationConfig.from_yaml(path).convergence_params == {}
