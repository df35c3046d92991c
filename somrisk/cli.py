import click
import yaml
import os

import pandas as pd

from .pipeline import ZonationPipeline
from .io import load_points, load_grid


def load_yaml(path):
    """
    Load YAML config and auto-convert specific list fields to tuples:
    - som_kwargs.som_dimensions
    - som_kwargs.learning_rate
    - som_kwargs.radius

    Args:
        path (str): Path to the YAML file.

    Returns:
        dict: Processed configuration dictionary.
    """

    with open(path, 'r') as f:
        cfg = yaml.safe_load(f)

    if cfg is None:
        cfg = {}

    # Auto-convert SOM pairs from list to tuple if present
    if 'som_kwargs' in cfg and cfg['som_kwargs'] is not None:

        som_kwargs = cfg['som_kwargs']

        for key in ('som_dimensions', 'learning_rate', 'radius'):
            value = som_kwargs.get(key, None)
            if value is not None and isinstance(value, list):
                som_kwargs[key] = tuple(value)

        cfg['som_kwargs'] = som_kwargs

    return cfg


def _load_point_set(point_cfg, predictor_names, verbosity):
    # A point set is given as filename or as dict of load_points() arguments
    if isinstance(point_cfg, str):
        point_cfg = {'filename': point_cfg}
    return load_points(predictor_names=predictor_names, verbosity=verbosity, **point_cfg)


@click.group()
def cli():
    """CLI for training and applying SOM risk zonation pipelines."""


@cli.command()
@click.option('--config', required=True, type=click.Path(exists=True), help='YAML for initialization. Includes train data.')
def train(config):
    """
    Instantiate a new pipeline, train and save. All parameters must be provided via config file in YAML format.
    """
    cfg = load_yaml(config)

    filename_pipeline = cfg.pop('pipeline_filename', 'zonation_pipeline.pkl')
    cfg['save_path'] = cfg.pop('save_dir', './')

    presence_cfg = cfg.pop('presence')
    background_cfg = cfg.pop('background')
    absence_cfg = cfg.pop('absence', None)

    zp = ZonationPipeline(**cfg)

    presence = _load_point_set(presence_cfg, zp.predictor_names, zp.verbosity)
    background = _load_point_set(background_cfg, zp.predictor_names, zp.verbosity)
    absence = _load_point_set(absence_cfg, zp.predictor_names, zp.verbosity) if absence_cfg is not None else None

    zp.train(presence=presence, background=background, absence=absence)
    zp.save(filepath=None, filename=filename_pipeline)  # filepath=None => use self.save_path

    for key, value in zp.quality_report().items():
        click.echo(f'{key}: {value:.4f}')

    click.secho(
        f'# --- Pipeline trained and saved to {os.path.join(zp.save_path, filename_pipeline)} --- #',
        fg='green'
    )


@cli.command()
@click.option('--config', required=True, type=click.Path(exists=True), help='YAML for prediction')
def predict(config):
    """
    Load a trained pipeline, write one risk grid per epoch and optionally validate against held-out points.
    """
    cfg = load_yaml(config)

    filename_pipeline = cfg.pop('filename_pipeline', 'zonation_pipeline.pkl')
    load_dir_pipeline = cfg.pop('load_dir_pipeline', './')

    zp = ZonationPipeline.load(filepath=load_dir_pipeline, filename=filename_pipeline)

    save_dir = cfg.pop('save_dir', './')
    os.makedirs(save_dir, exist_ok=True)
    smooth = cfg.pop('smooth', True)

    # epochs: {name: grid .npz path}
    epoch_paths = cfg.pop('epochs')
    grids = {
        epoch: load_grid(filename=os.path.basename(path), filepath=os.path.dirname(path) or None)
        for epoch, path in epoch_paths.items()
    }

    paths = zp.run_epochs(grids=grids, save_path=save_dir, smooth=smooth)

    # validation: {epoch name: point CSV path or load_points() arguments}
    validation_cfg = cfg.pop('validation', None)
    if validation_cfg is not None:
        rows = []
        for epoch, point_cfg in validation_cfg.items():
            if epoch not in grids:
                raise click.BadParameter(f"Validation epoch '{epoch}' has no grid.", param_hint='validation')
            if isinstance(point_cfg, str):
                point_cfg = {'filename': point_cfg, 'label_key': 'label'}
            points = load_points(verbosity=zp.verbosity, **point_cfg)
            results = zp.validate(points=points, grid=grids[epoch], smooth=smooth)
            rows.append({
                'epoch': epoch,
                'n_points': results['n_points'],
                'n_no_data': results['n_no_data'],
                'auc': results['auc'],
                'high_risk_capture': results['high_risk_capture'],
            })
        pd.DataFrame(rows).to_csv(os.path.join(save_dir, 'validation.csv'), index=False)

    click.secho(
        f'# --- Prediction complete. {len(paths)} risk grids saved to {save_dir} --- #',
        fg='green'
    )


if __name__ == '__main__':
    cli()
