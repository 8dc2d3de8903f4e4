"""
Tests for Tier Router configuration.

Covers the packaged defaults, saving and reloading config directories,
corrupt config handling, ClientConfig parsing and the client store.
"""

import json
import os
import shutil
import tempfile
import unittest

from tier_router import ClientConfig, ClientConfigStore, Config, Tier


class TestConfig(unittest.TestCase):
    """Test configuration management."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.config = Config()

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_default_config_loads(self):
        """Packaged defaults provide a catalog for every tier."""
        catalog = self.config.get_catalog()
        self.assertEqual(set(catalog), {'economy', 'standard', 'premium'})
        self.assertIn('anthropic', catalog['premium'])
        self.assertIn('model', catalog['premium']['anthropic'])
        self.assertEqual(self.config.get_default_provider(), 'anthropic')

    def test_assessor_settings(self):
        self.assertEqual(self.config.get_thresholds(), {'premium': 0.7, 'standard': 0.4})
        self.assertAlmostEqual(sum(self.config.get_weights().values()), 1.0)
        self.assertIn('analyze', self.config.get_reasoning_keywords())
        self.assertIn('story', self.config.get_creativity_keywords())

    def test_providers_include_catalog_providers(self):
        providers = self.config.get_providers()
        for name in ('anthropic', 'openai', 'google'):
            self.assertIn(name, providers)

    def test_save_and_load_config(self):
        """Custom catalog entries and clients survive a save/load cycle."""
        self.config.set_catalog_entry('economy', 'local', {
            'model': 'llama-3-8b',
            'cost_per_1k_input': 0.0,
            'cost_per_1k_output': 0.0,
        })
        self.config.set_client('acme', {'default_provider': 'openai', 'max_daily_cost': 5.0})
        self.config.save_config(self.temp_dir)

        reloaded = Config(self.temp_dir)
        self.assertEqual(reloaded.get_catalog()['economy']['local']['model'], 'llama-3-8b')
        self.assertEqual(reloaded.get_clients()['acme']['max_daily_cost'], 5.0)

    def test_remove_catalog_entry(self):
        self.assertTrue(self.config.remove_catalog_entry('premium', 'google'))
        self.assertFalse(self.config.remove_catalog_entry('premium', 'google'))
        self.assertNotIn('google', self.config.get_catalog()['premium'])

    def test_update_assessor_settings(self):
        self.config.update_assessor_settings({'thresholds': {'premium': 0.8, 'standard': 0.5}})
        self.assertEqual(self.config.get_thresholds()['premium'], 0.8)
        self.assertIn('analyze', self.config.get_reasoning_keywords())

    def test_baselines(self):
        self.assertEqual(self.config.get_baselines(), {})
        self.config.update_assessor_settings({'baselines': {'code': {'precision_need': 1.0}}})
        self.assertEqual(self.config.get_baselines()['code']['precision_need'], 1.0)

    def test_corrupt_config_raises(self):
        with open(os.path.join(self.temp_dir, 'config.json'), 'w') as f:
            f.write('{not json')
        with self.assertRaises(ValueError):
            Config(self.temp_dir)

    def test_missing_config_falls_back_to_defaults(self):
        config = Config(self.temp_dir)
        self.assertIn('standard', config.get_catalog())


class TestClientConfig(unittest.TestCase):
    """Test per-client settings."""

    def test_defaults_are_unlimited(self):
        client = ClientConfig()
        self.assertIsNone(client.max_daily_cost)
        self.assertIsNone(client.max_monthly_cost)
        self.assertEqual(client.allowed_providers, [])

    def test_from_dict_parses_tiers(self):
        client = ClientConfig.from_dict({
            'default_tier': 'Premium',
            'tier_overrides': {'standard': {'max_tokens': 2048}},
            'pinned_versions': {'openai': 'gpt-4o-2024-08-06'},
        })
        self.assertEqual(client.default_tier, Tier.PREMIUM)
        self.assertEqual(client.tier_overrides[Tier.STANDARD], {'max_tokens': 2048})

    def test_round_trip(self):
        client = ClientConfig(
            default_provider='google',
            allowed_providers=['google', 'openai'],
            tier_overrides={Tier.ECONOMY: {'temperature': 0.2}},
            max_daily_cost=3.0,
            max_monthly_cost=50.0,
        )
        self.assertEqual(ClientConfig.from_dict(client.to_dict()), client)
        # to_dict output must be JSON-serialisable
        json.dumps(client.to_dict())

    def test_negative_limits_rejected(self):
        with self.assertRaises(ValueError):
            ClientConfig(max_daily_cost=-1.0)
        with self.assertRaises(ValueError):
            ClientConfig(max_monthly_cost=-0.01)

    def test_unknown_tier_rejected(self):
        with self.assertRaises(ValueError):
            ClientConfig(default_tier='platinum')


class TestClientConfigStore(unittest.TestCase):
    """Test whole-object client configuration replacement."""

    def setUp(self):
        self.store = ClientConfigStore()

    def test_unknown_client_gets_empty_config(self):
        self.assertEqual(self.store.get('nobody'), ClientConfig())

    def test_set_replaces_whole_config(self):
        self.store.set('acme', ClientConfig(default_provider='openai', max_daily_cost=5.0))
        self.store.set('acme', ClientConfig(default_provider='google'))
        client = self.store.get('acme')
        self.assertEqual(client.default_provider, 'google')
        self.assertIsNone(client.max_daily_cost)

    def test_set_copies_value(self):
        original = ClientConfig(allowed_providers=['openai'])
        self.store.set('acme', original)
        original.allowed_providers.append('google')
        self.assertEqual(self.store.get('acme').allowed_providers, ['openai'])

    def test_remove_and_list(self):
        self.store.set('b', ClientConfig())
        self.store.set('a', ClientConfig())
        self.assertEqual(self.store.client_ids(), ['a', 'b'])
        self.assertTrue(self.store.remove('a'))
        self.assertFalse(self.store.remove('a'))
        self.assertEqual(self.store.client_ids(), ['b'])

    def test_seeded_from_config(self):
        config = Config()
        config.set_client('acme', {'default_provider': 'openai', 'max_daily_cost': 2.5})
        store = ClientConfigStore(config)
        self.assertEqual(store.get('acme').default_provider, 'openai')
        self.assertEqual(store.get('acme').max_daily_cost, 2.5)


if __name__ == '__main__':
    unittest.main()
