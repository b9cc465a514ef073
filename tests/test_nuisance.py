import numpy as np
import pandas as pd
import pytest

from npadjust import (
    KernelRegressionBackend,
    NuisanceFit,
    NuisanceFitFailure,
    NuisanceRegressor,
    RandomForestBackend,
    SklearnBackend,
    SVMBackend,
    UnsupportedBackend,
    fit_nuisance,
    get_backend,
)


N = 300


def make_data(seed=0):
    rng = np.random.default_rng(seed)
    x = rng.normal(size=N)
    group = rng.choice(["a", "b", "c"], size=N)
    shift = pd.Series(group).map({"a": -1.0, "b": 0.0, "c": 1.0}).to_numpy()
    z = np.sin(x) + shift + rng.normal(scale=0.5, size=N)
    y = 1.5 * z + x ** 2 + shift + rng.normal(size=N)
    return pd.DataFrame({"x": x, "group": group, "z": z, "y": y})


class RaisingBackend(NuisanceRegressor):
    name = "raising"

    def fit(self, target, confounders, data):
        raise RuntimeError("solver diverged")


class ListBackend(NuisanceRegressor):
    """Returns a bare list of predictions instead of a NuisanceFit."""
    name = "list"

    def fit(self, target, confounders, data):
        return [float(data[target].mean())] * len(data)


class NaNBackend(NuisanceRegressor):
    name = "nan"

    def fit(self, target, confounders, data):
        preds = np.zeros(len(data))
        preds[3] = np.nan
        return NuisanceFit(None, preds, None, target=target, backend=self.name)


class TestGetBackend:
    @pytest.mark.parametrize("name", ["random_forest", "RandomForest", "rf", "Random-Forest"])
    def test_random_forest_aliases(self, name):
        assert isinstance(get_backend(name), RandomForestBackend)

    @pytest.mark.parametrize("name", ["svm", "SVM", "svr"])
    def test_svm_aliases(self, name):
        assert isinstance(get_backend(name), SVMBackend)

    @pytest.mark.parametrize("name", ["kernel", "KernelRegression", "npreg", "kernel_regression"])
    def test_kernel_aliases(self, name):
        assert isinstance(get_backend(name), KernelRegressionBackend)

    @pytest.mark.parametrize("name", ["lasso", "", "forest!", None, 3])
    def test_unknown_raises(self, name):
        with pytest.raises(UnsupportedBackend, match="Unsupported nuisance backend"):
            get_backend(name)

    def test_unsupported_backend_is_value_error(self):
        with pytest.raises(ValueError):
            get_backend("boosting")

    def test_instance_passthrough(self):
        backend = SVMBackend(C=2.0)
        assert get_backend(backend) is backend

    def test_params_with_instance_raise(self):
        with pytest.raises(ValueError, match="already constructed"):
            get_backend(SVMBackend(), C=2.0)

    def test_params_override_defaults(self):
        backend = get_backend("random_forest", random_state=7, n_estimators=50)
        assert backend.estimator.n_estimators == 50
        assert backend.estimator.min_samples_leaf == 5
        assert backend.estimator.random_state == 7


class TestRandomForestBackend:
    def test_predictions_cover_every_row(self):
        df = make_data()
        fit = RandomForestBackend(n_estimators=100, random_state=0).fit("y", ["x", "group"], df)
        assert isinstance(fit, NuisanceFit)
        assert fit.predictions.shape == (N,)
        assert fit.backend == "random_forest"
        assert fit.target == "y"

    def test_out_of_bag_residuals_larger_than_in_sample(self):
        """In-sample forest predictions overfit; out-of-bag ones do not."""
        df = make_data()
        oob = RandomForestBackend(n_estimators=100, random_state=0).fit("y", ["x"], df)
        insample = RandomForestBackend(n_estimators=100, oob=False, random_state=0).fit("y", ["x"], df)
        y = df["y"].to_numpy()
        assert np.var(y - oob.predictions) > np.var(y - insample.predictions)

    @pytest.mark.filterwarnings("ignore:Some inputs do not have OOB scores")
    def test_rows_without_out_of_bag_trees_fail(self):
        """With 3 trees on 30 rows several rows are drawn by every bootstrap."""
        df = make_data().head(30)
        backend = RandomForestBackend(n_estimators=3, random_state=0)
        with pytest.raises(NuisanceFitFailure, match="n_estimators") as info:
            fit_nuisance(backend, "y", ["x"], df)
        assert info.value.variable == "y"
        assert info.value.stage == "nuisance"
        assert "no out-of-bag prediction" in str(info.value)

    def test_few_trees_in_sample_predictions_allowed(self):
        df = make_data().head(30)
        fit = RandomForestBackend(n_estimators=3, oob=False, random_state=0).fit("y", ["x"], df)
        assert np.all(np.isfinite(fit.predictions))

    def test_seed_makes_fit_reproducible(self):
        df = make_data()
        a = RandomForestBackend(n_estimators=50, random_state=3).fit("z", ["x"], df)
        b = RandomForestBackend(n_estimators=50, random_state=3).fit("z", ["x"], df)
        np.testing.assert_array_equal(a.predictions, b.predictions)

    def test_predict_new_rows_with_missing_levels(self):
        df = make_data()
        fit = RandomForestBackend(n_estimators=50, random_state=0).fit("y", ["x", "group"], df)
        new = pd.DataFrame({"x": [0.0, 1.0], "group": ["a", "a"]})
        assert fit.predict(new).shape == (2,)


class TestSVMBackend:
    def test_fits_mixed_confounders(self):
        df = make_data()
        fit = SVMBackend().fit("y", ["x", "group"], df)
        y = df["y"].to_numpy()
        assert np.var(y - fit.predictions) < np.var(y)

    def test_predictions_on_target_scale(self):
        """The target is standardised internally; predictions must not be."""
        df = make_data().assign(y=lambda d: d["y"] * 1000 + 5000)
        fit = SVMBackend().fit("y", ["x"], df)
        assert abs(fit.predictions.mean() - df["y"].mean()) < 0.1 * df["y"].std()


class TestKernelRegressionBackend:
    def test_var_type_from_dtypes(self):
        df = pd.DataFrame({
            "num":   [0.1, 0.5, 0.9, 0.3],
            "label": ["a", "b", "a", "c"],
            "flag":  [True, False, True, False],
            "size":  pd.Categorical(["s", "m", "l", "m"], categories=["s", "m", "l"], ordered=True),
        })
        exog, var_type, levels = KernelRegressionBackend._encode(df, ["num", "label", "flag", "size"])
        assert var_type == "cuuo"
        assert exog.shape == (4, 4)
        np.testing.assert_array_equal(exog[:, 1], [0, 1, 0, 2])
        np.testing.assert_array_equal(exog[:, 3], [0, 1, 2, 1])
        assert list(levels) == ["label", "flag", "size"]

    def test_fits_with_cross_validated_bandwidth(self):
        df = make_data().iloc[:120].reset_index(drop=True)
        fit = KernelRegressionBackend().fit("y", ["x", "group"], df)
        assert fit.predictions.shape == (120,)
        assert len(fit.model.bw) == 2

    def test_fixed_bandwidth_and_predict(self):
        df = make_data().iloc[:120].reset_index(drop=True)
        fit = KernelRegressionBackend(bw=[0.3]).fit("z", ["x"], df)
        new = pd.DataFrame({"x": [-1.0, 0.0, 1.0]})
        assert fit.predict(new).shape == (3,)


class TestSklearnBackend:
    def test_wraps_any_regressor(self):
        from sklearn.linear_model import LinearRegression
        df = make_data()
        fit = SklearnBackend(LinearRegression()).fit("z", ["x", "group"], df)
        assert fit.predictions.shape == (N,)

    def test_estimator_is_cloned(self):
        from sklearn.linear_model import LinearRegression
        est = LinearRegression()
        SklearnBackend(est).fit("z", ["x"], make_data())
        assert not hasattr(est, "coef_")


class TestFitNuisance:
    def test_library_error_becomes_nuisance_fit_failure(self):
        with pytest.raises(NuisanceFitFailure, match="solver diverged") as info:
            fit_nuisance(RaisingBackend(), "y", ["x"], make_data())
        assert isinstance(info.value.__cause__, RuntimeError)
        assert info.value.variable == "y"
        assert info.value.stage == "nuisance"

    def test_infinite_covariate_fails(self):
        df = make_data()
        df.loc[5, "x"] = np.inf
        with pytest.raises(NuisanceFitFailure, match="'z'"):
            fit_nuisance(SVMBackend(), "z", ["x"], df)

    def test_non_finite_predictions_fail(self):
        with pytest.raises(NuisanceFitFailure, match="non-finite"):
            fit_nuisance(NaNBackend(), "z", ["x"], make_data())

    def test_bare_predictions_are_wrapped(self):
        fit = fit_nuisance(ListBackend(), "z", ["x"], make_data())
        assert isinstance(fit, NuisanceFit)
        assert fit.predictions.shape == (N,)
        with pytest.raises(NotImplementedError):
            fit.predict(make_data())

    def test_data_not_modified(self):
        df = make_data()
        before = df.copy()
        fit_nuisance(RandomForestBackend(n_estimators=20, random_state=0), "y", ["x", "group"], df)
        pd.testing.assert_frame_equal(df, before)
