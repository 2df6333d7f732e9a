#!/usr/bin/env python3

"""
NVMe SMART health log exporter.
Requires nvme-cli package and root privileges.

Every scrape of /metrics runs `nvme list`, then `nvme smart-log` once per device, and exposes
the 22 health log fields as gauges and counters labelled with the device path and model.
Temperatures are exposed in degrees Fahrenheit.

Formatted with Black:
$ black -l 100 nvme_exporter.py
"""

import argparse
import json
import logging
import os
import re
import shutil
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor
from socketserver import ThreadingMixIn
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional, Tuple
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import CollectorRegistry, generate_latest, make_wsgi_app
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, InfoMetricFamily, Metric

__version__ = "1.0.0"

DEFAULT_PORT = 9998
DEFAULT_TIMEOUT = 10.0
LABEL_NAMES = ("device", "model")
METRIC_FAMILIES = {"gauge": GaugeMetricFamily, "counter": CounterMetricFamily}

logger = logging.getLogger(__name__)


class Error(Exception):
    pass


class ExecutionError(Error):
    """nvme-cli could not be run, exited abnormally or timed out."""


class ParseError(Error):
    """nvme-cli output was not valid JSON or lacked a required key."""


class Device(NamedTuple):
    path: str
    model: str


class MetricDescriptor(NamedTuple):
    field: str
    name: str
    documentation: str
    kind: str
    transform: Optional[Callable[[float], float]] = None


class Sample(NamedTuple):
    descriptor: MetricDescriptor
    value: float
    labels: Tuple[str, str]


def kelvin_to_fahrenheit(kelvin: float) -> float:
    return (kelvin - 273.15) * 9 / 5 + 32


# nvme smart-log field descriptions can be found in section 5.16.1.3 of:
# https://nvmexpress.org/wp-content/uploads/NVM-Express-Base-Specification-2_0-2021.06.02-Ratified-5.pdf
SMART_LOG_METRICS = (
    # fmt: off
    MetricDescriptor(
        "critical_warning", "nvme_critical_warning",
        "Critical warnings for the state of the controller", "gauge",
    ),
    MetricDescriptor(
        "temperature", "nvme_temperature",
        "Composite temperature in degrees Fahrenheit", "gauge", kelvin_to_fahrenheit,
    ),
    MetricDescriptor(
        "avail_spare", "nvme_avail_spare",
        "Normalized percentage of remaining spare capacity available", "gauge",
    ),
    MetricDescriptor(
        "spare_thresh", "nvme_spare_thresh",
        "Async event completion may occur when avail spare < threshold", "gauge",
    ),
    MetricDescriptor(
        "percent_used", "nvme_percent_used",
        "Vendor specific estimate of the percentage of life used", "gauge",
    ),
    MetricDescriptor(
        "endurance_grp_critical_warning_summary", "nvme_endurance_grp_critical_warning_summary",
        "Critical warnings for the state of endurance groups", "gauge",
    ),
    MetricDescriptor(
        "data_units_read", "nvme_data_units_read",
        "Number of 512 byte data units the host has read, reported in thousands", "counter",
    ),
    MetricDescriptor(
        "data_units_written", "nvme_data_units_written",
        "Number of 512 byte data units the host has written, reported in thousands", "counter",
    ),
    MetricDescriptor(
        "host_read_commands", "nvme_host_read_commands",
        "Number of read commands completed by the controller", "counter",
    ),
    MetricDescriptor(
        "host_write_commands", "nvme_host_write_commands",
        "Number of write commands completed by the controller", "counter",
    ),
    MetricDescriptor(
        "controller_busy_time", "nvme_controller_busy_time",
        "Amount of time in minutes the controller is busy with I/O commands", "counter",
    ),
    MetricDescriptor(
        "power_cycles", "nvme_power_cycles",
        "Number of power cycles", "counter",
    ),
    MetricDescriptor(
        "power_on_hours", "nvme_power_on_hours",
        "Number of power-on hours", "counter",
    ),
    MetricDescriptor(
        "unsafe_shutdowns", "nvme_unsafe_shutdowns",
        "Number of unsafe shutdowns", "counter",
    ),
    MetricDescriptor(
        "media_errors", "nvme_media_errors",
        "Number of unrecovered data integrity errors", "counter",
    ),
    MetricDescriptor(
        "num_err_log_entries", "nvme_num_err_log_entries",
        "Lifetime number of error log entries", "counter",
    ),
    MetricDescriptor(
        "warning_temp_time", "nvme_warning_temp_time",
        "Amount of time in minutes the temperature is above the warning threshold", "counter",
    ),
    MetricDescriptor(
        "critical_comp_time", "nvme_critical_comp_time",
        "Amount of time in minutes the temperature is above the critical threshold", "counter",
    ),
    MetricDescriptor(
        "thm_temp1_trans_count", "nvme_thm_temp1_trans_count",
        "Number of times the controller transitioned to lower power for thermal "
        "management temperature 1", "counter",
    ),
    MetricDescriptor(
        "thm_temp2_trans_count", "nvme_thm_temp2_trans_count",
        "Number of times the controller transitioned to lower power for thermal "
        "management temperature 2", "counter",
    ),
    MetricDescriptor(
        "thm_temp1_total_time", "nvme_thm_temp1_trans_time",
        "Total number of seconds the controller spent at lower power for thermal "
        "management temperature 1", "counter",
    ),
    MetricDescriptor(
        "thm_temp2_total_time", "nvme_thm_temp2_trans_time",
        "Total number of seconds the controller spent at lower power for thermal "
        "management temperature 2", "counter",
    ),
    # fmt: on
)


def exec_nvme(*args, timeout=None):
    """
    Execute nvme CLI tool with specified arguments and return captured stdout result. Set LC_ALL=C
    in child process environment so that the nvme tool does not perform any locale-specific number
    or date formatting, etc.
    """
    cmd = ["nvme", *args]
    logger.debug("Running %s", " ".join(cmd))
    try:
        return subprocess.check_output(
            cmd, stderr=subprocess.PIPE, env=dict(os.environ, LC_ALL="C"), timeout=timeout
        )
    except FileNotFoundError as e:
        raise ExecutionError("nvme-cli is not installed") from e
    except OSError as e:
        raise ExecutionError("cannot run '{}': {}".format(" ".join(cmd), e)) from e
    except subprocess.TimeoutExpired as e:
        raise ExecutionError(
            "'{}' timed out after {} seconds".format(" ".join(cmd), timeout)
        ) from e
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors="replace").strip() if e.stderr else ""
        raise ExecutionError(
            "'{}' exited with status {}: {}".format(" ".join(cmd), e.returncode, stderr)
        ) from e


def exec_nvme_json(*args, timeout=None):
    """
    Execute nvme CLI tool with specified arguments and return parsed JSON output.
    """
    output = exec_nvme(*args, "--output-format", "json", timeout=timeout)
    try:
        return json.loads(output)
    except ValueError as e:
        raise ParseError("nvme {}: invalid JSON output: {}".format(args[0], e)) from e


def nvme_cli_version(timeout=None) -> str:
    output = exec_nvme("version", timeout=timeout).decode(errors="replace")
    match = re.match(r"^nvme version (\S+)", output)
    if match:
        return match.group(1)
    return "unknown"


def list_devices(timeout=None) -> List[Device]:
    """
    Return the NVMe devices reported by `nvme list`, in the order nvme-cli lists them. Path and
    model are always read from the same device object.
    """
    device_list = exec_nvme_json("list", timeout=timeout)
    if not isinstance(device_list, dict):
        raise ParseError("nvme list: expected a JSON object")

    entries = device_list.get("Devices", [])
    if not isinstance(entries, list):
        raise ParseError("nvme list: 'Devices' is not a list")

    devices = []
    for entry in entries:
        try:
            path = entry["DevicePath"]
        except (KeyError, TypeError) as e:
            raise ParseError("nvme list: device entry without 'DevicePath'") from e
        if not isinstance(path, str):
            raise ParseError("nvme list: 'DevicePath' is not a string: {!r}".format(path))
        model = entry.get("ModelNumber") or ""
        # Model numbers are space padded to the width of the identify controller field.
        devices.append(Device(path, str(model).strip()))
    return devices


def read_smart_log(device: Device, timeout=None) -> Dict:
    smart_log = exec_nvme_json("smart-log", device.path, timeout=timeout)
    if not isinstance(smart_log, dict):
        raise ParseError("nvme smart-log {}: expected a JSON object".format(device.path))
    return smart_log


def to_float(value) -> float:
    """
    Normalize a smart-log field to a float.

    Various counters in the NVMe specification are 128-bit, which would lose resolution as a
    JSON number, so nvme-cli marshals them as strings, sometimes with thousands separators.
    Newer nvme-cli releases wrap some fields (e.g. critical_warning) in an object carrying the
    raw number under "value". Values that cannot be parsed are reported as 0.
    """
    if isinstance(value, dict) and "value" in value:
        return to_float(value["value"])
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value.replace(",", ""))
    except (AttributeError, ValueError):
        logger.warning("Cannot parse %r as a number, reporting 0", value)
        return 0.0


def smart_log_samples(device: Device, smart_log: Dict) -> List[Sample]:
    samples = []
    for descriptor in SMART_LOG_METRICS:
        try:
            raw = smart_log[descriptor.field]
        except KeyError as e:
            raise ParseError(
                "nvme smart-log {}: missing field '{}'".format(device.path, descriptor.field)
            ) from e

        value = to_float(raw)
        if descriptor.transform is not None:
            value = descriptor.transform(value)
        samples.append(Sample(descriptor, value, (device.path, device.model)))
    return samples


def translate(device: Device, timeout=None) -> List[Sample]:
    return smart_log_samples(device, read_smart_log(device, timeout=timeout))


def _metric_family(descriptor: MetricDescriptor) -> Metric:
    family = METRIC_FAMILIES[descriptor.kind]
    return family(descriptor.name, descriptor.documentation, labels=LABEL_NAMES)


class NvmeCollector:
    """
    Custom collector running one complete nvme-cli pass per scrape. Nothing is cached between
    scrapes, so concurrent scrapes never share state.

    A device whose smart-log cannot be read is skipped and logged, unless fail_fast is set, in
    which case the error aborts the scrape.
    """

    def __init__(self, timeout=DEFAULT_TIMEOUT, workers=1, fail_fast=False, cli_version=None):
        self.timeout = timeout
        self.workers = workers
        self.fail_fast = fail_fast
        self.cli_version = cli_version

    def _info(self):
        return InfoMetricFamily(
            "nvme_nvmecli", "nvme-cli tool information", value={"version": self.cli_version}
        )

    def describe(self):
        if self.cli_version:
            yield self._info()
        for descriptor in SMART_LOG_METRICS:
            yield _metric_family(descriptor)

    def collect(self):
        families = {d.name: _metric_family(d) for d in SMART_LOG_METRICS}
        for sample in self.samples():
            families[sample.descriptor.name].add_metric(sample.labels, sample.value)

        if self.cli_version:
            yield self._info()
        yield from families.values()

    def samples(self) -> Iterator[Sample]:
        devices = list_devices(timeout=self.timeout)
        logger.debug("Found %d NVMe devices", len(devices))

        if self.workers > 1 and len(devices) > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                results = list(executor.map(self._translate, devices))
        else:
            results = [self._translate(device) for device in devices]

        for device_samples in results:
            yield from device_samples

    def _translate(self, device: Device) -> List[Sample]:
        try:
            return translate(device, timeout=self.timeout)
        except Error as e:
            if self.fail_fast:
                raise
            logger.error("Skipping %s: %s", device.path, e)
            return []


def metrics_app(registry: CollectorRegistry):
    """WSGI application serving the registry at /metrics only."""
    exposition = make_wsgi_app(registry)

    def app(environ, start_response):
        if environ.get("PATH_INFO") != "/metrics":
            start_response("404 Not Found", [("Content-Type", "text/plain")])
            return [b"Not Found\n"]
        try:
            return exposition(environ, start_response)
        except Error as e:
            logger.error("Scrape failed: %s", e)
            start_response("500 Internal Server Error", [("Content-Type", "text/plain")])
            return ["Scrape failed: {}\n".format(e).encode()]

    return app


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _LoggingRequestHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)


def parse_args(argv):
    parser = argparse.ArgumentParser(
        prog=os.path.basename(argv[0]),
        description="Expose NVMe SMART health log metrics for Prometheus.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "-p", "--port", type=int, default=DEFAULT_PORT, help="port to listen on"
    )
    parser.add_argument(
        "--listen-address", default="", help="address to bind to, all interfaces if empty"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help="seconds to wait for each nvme-cli invocation",
    )
    parser.add_argument(
        "--workers", type=int, default=1, help="number of devices queried in parallel"
    )
    parser.add_argument(
        "--fail-fast",
        action="store_true",
        help="fail the whole scrape when any device cannot be read",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="print metrics to stdout once and exit, for use as a textfile collector",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="logging level",
    )
    parser.add_argument("--version", action="version", version="%(prog)s {0}".format(__version__))

    args = parser.parse_args(argv[1:])
    if args.workers < 1:
        parser.error("--workers must be at least 1")
    return args


def main(argv=None):
    if argv is None:
        argv = sys.argv
    args = parse_args(argv)

    logging.basicConfig(
        level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    if os.geteuid() != 0:
        print("ERROR: script requires root privileges", file=sys.stderr)
        return 1

    if shutil.which("nvme") is None:
        print("ERROR: nvme-cli is not installed. Aborting.", file=sys.stderr)
        return 1

    try:
        cli_version = nvme_cli_version(timeout=args.timeout)
    except ExecutionError as e:
        print("ERROR: {}".format(e), file=sys.stderr)
        return 1

    registry = CollectorRegistry()
    registry.register(
        NvmeCollector(
            timeout=args.timeout,
            workers=args.workers,
            fail_fast=args.fail_fast,
            cli_version=cli_version,
        )
    )

    if args.once:
        try:
            output = generate_latest(registry)
        except Error as e:
            print("ERROR: {}".format(e), file=sys.stderr)
            return 1
        print(output.decode(), end="")
        return 0

    httpd = make_server(
        args.listen_address,
        args.port,
        metrics_app(registry),
        server_class=_ThreadingWSGIServer,
        handler_class=_LoggingRequestHandler,
    )
    logger.info(
        "nvme-cli %s, serving metrics on %s:%d/metrics",
        cli_version,
        args.listen_address or "*",
        args.port,
    )
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        httpd.server_close()
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
