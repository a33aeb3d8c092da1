"""Tests for configuration loading."""

from config import DEFAULT_CONFIG, default_config_path, load_config


class TestLoadConfig:
    """Test TOML configuration loading."""

    def test_missing_file_creates_default(self, temp_dir):
        path = temp_dir / "dupelink.toml"

        config = load_config(path)

        assert config == DEFAULT_CONFIG
        assert path.exists()
        assert "content_hash_algorithm" in path.read_text()
        # The generated file loads back to the same values
        assert load_config(path) == DEFAULT_CONFIG

    def test_missing_file_without_create(self, temp_dir):
        path = temp_dir / "dupelink.toml"
        assert load_config(path, create_missing=False) == DEFAULT_CONFIG
        assert not path.exists()

    def test_values_are_strings(self, temp_dir):
        path = temp_dir / "dupelink.toml"
        path.write_text('batch_size = 10\ncontent_hash_algorithm = "XXH64"\n')

        config = load_config(path)

        assert config['batch_size'] == '10'
        assert config['content_hash_algorithm'] == 'xxh64'
        assert config['size_unit_type'] == 'decimal'

    def test_invalid_values_fall_back(self, temp_dir):
        path = temp_dir / "dupelink.toml"
        path.write_text('batch_size = 0\ncontent_hash_algorithm = "crc32"\nunknown_key = 1\n')

        config = load_config(path)

        assert config['batch_size'] == DEFAULT_CONFIG['batch_size']
        assert config['content_hash_algorithm'] == 'md5'
        assert 'unknown_key' not in config

    def test_malformed_file_uses_defaults(self, temp_dir):
        path = temp_dir / "dupelink.toml"
        path.write_text('batch_size = = 3\n')
        assert load_config(path) == DEFAULT_CONFIG

    def test_default_path_is_beside_database(self, temp_dir):
        assert default_config_path(temp_dir / "index.db") == temp_dir / "dupelink.toml"
