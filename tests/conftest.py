import pytest

from kubevalidator.github.model import Repository

from helpers import REPOSITORY


@pytest.fixture
def repo():
    return Repository.model_validate(REPOSITORY)
