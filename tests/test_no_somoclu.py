import importlib
import sys
from unittest.mock import patch

import numpy as np
import pytest


def test_import_without_somoclu():
    with patch.dict("sys.modules", {"somoclu": None}):

        # Remove pre-imported somrisk modules
        for mod in list(sys.modules):
            if mod.startswith("somrisk"):
                del sys.modules[mod]

        zonation = importlib.import_module("somrisk.zonation")

        assert zonation.SOMOCLU_AVAILABLE is False


def test_somoclu_training_raises_without_somoclu(small_X):
    with patch.dict("sys.modules", {"somoclu": None}):

        for mod in list(sys.modules):
            if mod.startswith("somrisk"):
                del sys.modules[mod]

        from somrisk.zonation import SomTrainer

        trainer = SomTrainer(learning_rate=(0.5, 0.01), som_dimensions=(2, 2), training_mode='somoclu', verbosity=0)
        with pytest.raises(ImportError):
            trainer.fit(small_X)


@pytest.mark.parametrize('training_mode', ['batch', 'online'])
def test_numba_training_works_without_somoclu(small_X, training_mode):
    with patch.dict("sys.modules", {"somoclu": None}):

        for mod in list(sys.modules):
            if mod.startswith("somrisk"):
                del sys.modules[mod]

        from somrisk.zonation import SomTrainer

        prototypes, bmus = SomTrainer(
            learning_rate=(0.5, 0.01), som_dimensions=(2, 2), n_epochs=2, training_mode=training_mode, verbosity=0
        ).train(small_X)

        assert prototypes.shape == (4, 3)
        assert np.isfinite(prototypes).all()
