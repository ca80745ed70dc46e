pytest_plugins = [
    "tests.fixtures.mock_config",
    "tests.fixtures.mock_clients",
    "tests.fixtures.mock_data",
]
