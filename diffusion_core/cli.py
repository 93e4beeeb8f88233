"""
Module: diffusion_core.cli
Purpose: Developer command-line tooling for inspecting schedules and tile plans
Dependencies: click

Nothing here runs a model. The commands print what the sampling core
would do for a given configuration, which is handy when tuning step counts
or tile sizes.
"""

import logging
import sys

import click

from diffusion_core import __version__
from diffusion_core.config import get_config
from diffusion_core.errors import DiffusionCoreError
from diffusion_core.schedulers import SchedulerState, available_schedulers, create_scheduler
from diffusion_core.tiled_vae import plan_tiles
from diffusion_core.utils.device import format_device_info


@click.group()
@click.version_option(version=__version__, prog_name="diffusion-core")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """
    diffusion-core - inspect the diffusion sampling core.

    Examples:

    \b
      # Sigma curve of a 20-step Euler Karras run
      diffusion-core schedule --kind euler-karras --steps 20

    \b
      # Tile layout for a 1024x768 decode with 256px tiles
      diffusion-core tiles --width 1024 --height 768 --tile-size 256

    \b
      # Available scheduler kinds
      diffusion-core schedulers
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.option(
    "--kind", "-k",
    type=click.Choice(available_schedulers(), case_sensitive=False),
    default=None,
    help="Scheduler kind (default: from configuration)"
)
@click.option(
    "--steps", "-s",
    type=int,
    default=20,
    help="Number of sampling steps (default: 20)"
)
def schedule(kind: str, steps: int):
    """
    Print the sigmas and timesteps a scheduler would follow.

    \b
    Examples:
      diffusion-core schedule --steps 10
      diffusion-core schedule --kind ddpm --steps 25
    """
    kind = kind or get_config().schedulers["default"]
    try:
        scheduler = create_scheduler(kind)
        result = scheduler.generate_timesteps(steps, SchedulerState())
    except DiffusionCoreError as e:
        click.echo(f"✗ Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"{scheduler.name}: {result.steps} steps")
    click.echo(f"{'step':>4}  {'timestep':>8}  {'sigma':>10}  {'sigma_next':>10}")
    for i in range(result.steps):
        click.echo(
            f"{i:>4}  {result.timesteps[i]:>8}  {result.sigma(i):>10.4f}  {result.sigma_next(i):>10.4f}"
        )


@cli.command()
@click.option("--width", "-w", type=int, default=512, help="Image width in pixels (default: 512)")
@click.option("--height", "-h", type=int, default=512, help="Image height in pixels (default: 512)")
@click.option(
    "--tile-size", "-t",
    type=int,
    default=None,
    help="Tile size in pixels (default: from configuration)"
)
def tiles(width: int, height: int, tile_size: int):
    """
    Print the tile grid a tiled VAE decode would use.

    \b
    Examples:
      diffusion-core tiles --width 512 --height 512 --tile-size 256
    """
    tiling = get_config().tiling
    factor = tiling["vae_scale_factor"]
    tile_size = tile_size or tiling["tile_size_px"]
    if width % factor or height % factor:
        click.echo(f"✗ Error: width and height must be multiples of {factor}", err=True)
        sys.exit(1)

    try:
        plan = plan_tiles(width // factor, height // factor, tile_size,
                          vae_scale_factor=factor, max_overlap=tiling["max_overlap_latent"])
    except ValueError as e:
        click.echo(f"✗ Error: {e}", err=True)
        sys.exit(1)

    click.echo(
        f"{plan.tiles_x}x{plan.tiles_y} tiles ({len(plan)} total), "
        f"overlap {plan.overlap * factor}px, padded tile {plan.max_tile * factor}px"
    )
    for tile in plan:
        x, y, w, h = tile.pixel_box(factor)
        click.echo(f"  #{tile.index:<3} ({tile.col},{tile.row})  x={x:<5} y={y:<5} {w}x{h}")


@cli.command()
def schedulers():
    """List the available scheduler kinds."""
    default = get_config().schedulers["default"]
    for kind in available_schedulers():
        marker = " (default)" if kind == default else ""
        click.echo(f"{kind:<20} {create_scheduler(kind).name}{marker}")


@cli.command()
def info():
    """
    Display device information and the active configuration.
    """
    config = get_config()
    click.echo("=== diffusion-core System Info ===\n")
    click.echo(format_device_info())

    click.echo("\n--- Configuration ---")
    click.echo(f"Default scheduler: {config.schedulers['default']}")
    click.echo(
        f"Sigma range: {config.schedule['sigma_min']} -> {config.schedule['sigma_max']} "
        f"(rho {config.schedule['rho']})"
    )
    click.echo(f"Pool capacity: {config.pool['capacity']} per key")
    click.echo(f"Tile size: {config.tiling['tile_size_px']}px")
    click.echo(f"Debug numerics: {config.debug['check_numerics']}")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
