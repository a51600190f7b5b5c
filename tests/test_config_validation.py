from __future__ import annotations

import unittest

import config


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


class ValidateConfigTests(ConfigPatchMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(
            MOMENTUM_MIN_TRADES=3,
            MOMENTUM_MIN_UNIQUE_TRADERS=2,
            MOMENTUM_MIN_VOLUME_SOL=0.2,
            MOMENTUM_MIN_PRICE_CHANGE_PCT=2.0,
            MOMENTUM_MIN_OBSERVATION_SECONDS=0.0,
            MOMENTUM_MIN_VOLATILITY=0.0,
            MOMENTUM_MIN_BUY_RATIO=0.5,
            MOMENTUM_MAX_HOLDER_CONCENTRATION=0.5,
            MOMENTUM_MIN_SURVIVAL_RATIO=0.0,
            MOMENTUM_OBSERVATION_WINDOW_SECONDS=5.0,
            EXIT_TAKE_PROFIT_PCT=50.0,
            EXIT_STOP_LOSS_PCT=15.0,
            EXIT_TRAILING_STOP_ENABLED=True,
            EXIT_TRAILING_ACTIVATION_PCT=10.0,
            EXIT_TRAILING_DISTANCE_PCT=15.0,
            HOLDER_DUMP_MIN_SOLD_PCT=0.0,
            HOLDER_DUMP_WATCH_COUNT=3,
            HOLDER_FETCH_TOP_N=10,
            ENTRY_SIZE_SOL=0.05,
            PAPER_FAIL_RATE=0.0,
        )

    def assertInvalid(self, fragment: str) -> None:
        with self.assertRaises(config.ConfigError) as ctx:
            config.validate_config()
        self.assertIn(fragment, str(ctx.exception))

    def test_sane_thresholds_pass(self) -> None:
        config.validate_config()

    def test_negative_percentages_rejected(self) -> None:
        self.patch_cfg(EXIT_STOP_LOSS_PCT=-5.0)
        self.assertInvalid("EXIT_STOP_LOSS_PCT")

    def test_nan_rejected(self) -> None:
        self.patch_cfg(MOMENTUM_MIN_VOLUME_SOL=float("nan"))
        self.assertInvalid("MOMENTUM_MIN_VOLUME_SOL")

    def test_ratio_outside_unit_interval_rejected(self) -> None:
        self.patch_cfg(MOMENTUM_MAX_HOLDER_CONCENTRATION=1.5)
        self.assertInvalid("MOMENTUM_MAX_HOLDER_CONCENTRATION")
        self.patch_cfg(MOMENTUM_MAX_HOLDER_CONCENTRATION=0.5, MOMENTUM_MIN_BUY_RATIO=-0.1)
        self.assertInvalid("MOMENTUM_MIN_BUY_RATIO")

    def test_window_must_be_positive(self) -> None:
        self.patch_cfg(MOMENTUM_OBSERVATION_WINDOW_SECONDS=0.0)
        self.assertInvalid("MOMENTUM_OBSERVATION_WINDOW_SECONDS")

    def test_trailing_distance_required_only_when_enabled(self) -> None:
        self.patch_cfg(EXIT_TRAILING_DISTANCE_PCT=0.0)
        self.assertInvalid("EXIT_TRAILING_DISTANCE_PCT")
        self.patch_cfg(EXIT_TRAILING_STOP_ENABLED=False)
        config.validate_config()

    def test_holder_watch_count_bounds(self) -> None:
        self.patch_cfg(HOLDER_DUMP_WATCH_COUNT=0)
        self.assertInvalid("HOLDER_DUMP_WATCH_COUNT")
        self.patch_cfg(HOLDER_DUMP_WATCH_COUNT=5, HOLDER_FETCH_TOP_N=3)
        self.assertInvalid("HOLDER_FETCH_TOP_N")


if __name__ == "__main__":
    unittest.main()
