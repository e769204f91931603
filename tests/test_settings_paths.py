from pathlib import Path

from core import settings


def test_linux_data_dir_with_xdg():
    env = {"XDG_DATA_HOME": "/tmp/xdg"}
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="linux",
        env=env,
        home=Path("/home/test"),
    )
    assert result == Path("/tmp/xdg") / settings.APP_NAME


def test_linux_data_dir_default_home():
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="linux",
        env={},
        home=Path("/home/test"),
    )
    assert result == Path("/home/test/.local/share") / settings.APP_NAME


def test_macos_data_dir():
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="darwin",
        env={},
        home=Path("/Users/test"),
    )
    expected = Path("/Users/test/Library/Application Support") / settings.APP_NAME
    assert result == expected


def test_windows_data_dir_appdata():
    env = {"APPDATA": "C:/Users/test/AppData/Roaming"}
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="win32",
        env=env,
        home=Path("C:/Users/test"),
    )
    expected = Path(env["APPDATA"]) / settings.APP_NAME
    assert result == expected


def test_env_override_wins():
    env = {"CALMIRROR_DATA_DIR": "/srv/calmirror", "XDG_DATA_HOME": "/tmp/xdg"}
    result = settings.get_default_data_dir(settings.APP_NAME, platform="linux", env=env)
    assert result == Path("/srv/calmirror")


def test_runtime_paths_inside_data_dir():
    assert settings.DB_PATH.parent == settings.DATA_DIR
    assert settings.TOKEN_PATH.parent == settings.SECRETS_DIR
    assert settings.SYNC_LOG_PATH.parent == settings.LOG_DIR
    assert settings.GOOGLE.token_path == settings.TOKEN_PATH


def test_default_intervals():
    assert settings.SYNC.incremental_interval_sec == 60
    assert settings.SYNC.full_interval_sec == 8 * 60 * 60
    assert (settings.SYNC.window_past_days, settings.SYNC.window_future_days) == (30, 90)
    assert settings.CONNECTIVITY.debounce_sec == 3.0
    assert settings.CONNECTIVITY.poll_offline_sec < settings.CONNECTIVITY.poll_online_sec
