from copy import deepcopy

import pytest

from aiquant.utils import database
from tests.helpers import BASE_CONFIG


@pytest.fixture(autouse=True)
def temp_db(tmp_path):
    database.set_db_path(tmp_path / "test.db")
    database.init_db()
    yield tmp_path / "test.db"
    database.close_write_conn()


@pytest.fixture
def config():
    return deepcopy(BASE_CONFIG)
