import logging
import sys

from pydantic_settings import CliApp

from patch_stitcher.acquisition import TiffAcquisitionReader
from patch_stitcher.parameters import PipelineCliParameters
from patch_stitcher.pipeline import PatchPipeline
from patch_stitcher.writers import TiffImageWriter


def main(args: list[str]) -> int:
    params = CliApp.run(PipelineCliParameters, cli_args=args)
    log_level = logging.DEBUG if params.verbose else logging.INFO
    logging.basicConfig(level=log_level)
    # tifffile warns about every non-ImageJ metadata key at debug level
    logging.getLogger("tifffile").setLevel(logging.INFO)

    reader = TiffAcquisitionReader(
        params.input_folder,
        channel_names=params.channel_names,
        num_channels=params.num_channels,
        brightfield_channel=params.brightfield_channel,
        background_subtraction=params.background_subtraction,
        rolling_ball_radius=params.rolling_ball_radius,
    )
    pipeline = PatchPipeline(params, brightfield_channel=reader.brightfield_channel)
    result = pipeline.run_reader(reader, TiffImageWriter(params.patches_folder))

    for well, error in result.failures.items():
        logging.error(f"Well {well} was skipped: {error}")
    return 0 if result.succeeded else 1


def cli() -> None:
    sys.exit(main(sys.argv[1:]))


if __name__ == "__main__":
    cli()
