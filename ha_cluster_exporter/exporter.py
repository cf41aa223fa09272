# vim: expandtab:ts=4
#
# Copyright 2017 Hector Martin "marcan" <marcan@marcan.st>
# Copyright 2026 The ha_cluster_exporter Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import argparse, logging, socket, sys
from socketserver import ThreadingMixIn
from http.server import HTTPServer
from urllib.parse import urlparse
from prometheus_client import REGISTRY, MetricsHandler
from prometheus_client import GC_COLLECTOR, PLATFORM_COLLECTOR, PROCESS_COLLECTOR

from . import __version__
from .collector import CollectorError, InstrumentableCollector, InstrumentedCollector, SubsystemCollector
from .corosync import CorosyncCollector
from .drbd import DRBDCollector
from .pacemaker import PacemakerCollector
from .sbd import SBDCollector

logger = logging.getLogger(__name__)

LOG_FORMAT = 'ts=%(asctime)s level=%(levelname)s caller=%(module)s:%(lineno)d msg="%(message)s"'
LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'error': logging.ERROR,
}

LANDING_PAGE = b"""<html>
<head><title>HA Cluster Exporter</title><style>body { font-family: sans-serif; }</style></head>
<body>
<h1>HA Cluster Exporter</h1>
<p><a href="%s">Metrics</a></p>
</body>
</html>
"""

def make_collectors(args):
    """Create the subsystem collectors, returning them and the failures to create the rest."""
    opts = {'timeout': args.command_timeout, 'enable_timestamps': args.enable_timestamps}
    factories = [
        ('pacemaker', lambda: PacemakerCollector(args.crm_mon_path, args.cibadmin_path, **opts)),
        ('corosync', lambda: CorosyncCollector(args.corosync_cfgtool_path,
                                               args.corosync_quorumtool_path, **opts)),
        ('sbd', lambda: SBDCollector(args.sbd_path, args.sbd_config_path, **opts)),
        ('drbd', lambda: DRBDCollector(args.drbdsetup_path, args.drbdsplitbrain_path, **opts)),
    ]

    collectors, errors = [], []
    for subsystem, factory in factories:
        try:
            collectors.append(factory())
        except CollectorError as e:
            errors.append((subsystem, e))
    return collectors, errors

def register_collectors(args, registry):
    """Create, instrument and register the collectors.

    Collectors that cannot be created are left out and reported in the
    returned error list. Registering two collectors that describe the same
    metric makes the registry raise ValueError.
    """
    collectors, errors = make_collectors(args)
    collectors = [InstrumentedCollector(c) if isinstance(c, InstrumentableCollector) else c
                  for c in collectors]
    for c in collectors:
        registry.register(c)
    return collectors, errors

class MainHandler(MetricsHandler):
    telemetry_path = '/metrics'

    def do_GET(self):
        path = urlparse(self.path).path
        try:
            if path == "/":
                self.send_html()
            elif path == self.telemetry_path:
                MetricsHandler.do_GET(self)
            else:
                self.send_error(404)
        except Exception as e:
            logger.exception('error serving %s', path)
            self.send_error(500, str(e))

    def send_html(self):
        html = LANDING_PAGE % self.telemetry_path.encode('utf-8')
        self.send_response(200)
        self.send_header('Content-Type', 'text/html')
        self.end_headers()
        self.wfile.write(html)

    def log_message(self, format, *args):
        logger.debug('%s - %s', self.address_string(), format % args)

def make_handler(registry, telemetry_path):
    handler = MainHandler.factory(registry)
    handler.telemetry_path = telemetry_path
    return handler

class ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True

    def __init__(self, address, handler):
        # literal IPv6 hosts, as left by parse_listen_address
        if ':' in address[0]:
            self.address_family = socket.AF_INET6
        HTTPServer.__init__(self, address, handler)

def parse_listen_address(address):
    host, sep, port = address.rpartition(':')
    if not sep:
        raise ValueError('missing port in %r' % address)
    return host.strip('[]'), int(port)

def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog='ha_cluster_exporter',
                                     description='Prometheus exporter for Pacemaker HA clusters')
    parser.add_argument("--web.listen-address", dest="listen_address", default="0.0.0.0:9664",
                        help="Address to listen on for web interface and telemetry")
    parser.add_argument("--web.telemetry-path", dest="telemetry_path", default="/metrics",
                        help="Path under which to expose metrics")
    parser.add_argument("--log.level", dest="log_level", default="info", choices=LOG_LEVELS,
                        help="The minimum logging level")
    parser.add_argument("--crm-mon-path", default="/usr/sbin/crm_mon",
                        help="Path to crm_mon executable")
    parser.add_argument("--cibadmin-path", default="/usr/sbin/cibadmin",
                        help="Path to cibadmin executable")
    parser.add_argument("--corosync-cfgtool-path", default="/usr/sbin/corosync-cfgtool",
                        help="Path to corosync-cfgtool executable")
    parser.add_argument("--corosync-quorumtool-path", default="/usr/sbin/corosync-quorumtool",
                        help="Path to corosync-quorumtool executable")
    parser.add_argument("--sbd-path", default="/usr/sbin/sbd",
                        help="Path to sbd executable")
    parser.add_argument("--sbd-config-path", default="/etc/sysconfig/sbd",
                        help="Path to sbd configuration")
    parser.add_argument("--drbdsetup-path", default="/sbin/drbdsetup",
                        help="Path to drbdsetup executable")
    parser.add_argument("--drbdsplitbrain-path", default="/var/run/drbd/splitbrain",
                        help="Path to drbd splitbrain hooks temporary files")
    parser.add_argument("--command-timeout", type=float, default=5,
                        help="Seconds to wait for each external command")
    parser.add_argument("--enable-timestamps", action="store_true",
                        help="Add the timestamp to every metric line")
    parser.add_argument("--version", action="version", version="%(prog)s " + __version__)
    return parser.parse_args(argv)

def main(argv=None, registry=REGISTRY):
    args = parse_args(argv)
    logging.basicConfig(level=LOG_LEVELS[args.log_level], format=LOG_FORMAT)

    try:
        address = parse_listen_address(args.listen_address)
    except ValueError as e:
        logger.error('invalid listen address: %s', e)
        sys.exit(1)

    try:
        collectors, errors = register_collectors(args, registry)
    except ValueError as e:
        logger.error('could not register collectors: %s', e)
        sys.exit(1)

    for subsystem, error in errors:
        logger.warning('%s collector not registered: %s', subsystem, error)
    if not collectors:
        logger.error('no collector could be registered')
        sys.exit(1)
    for c in collectors:
        if isinstance(c, SubsystemCollector):
            logger.info('%s collector registered', c.subsystem)

    # the client's own runtime metrics are only of interest when debugging
    if registry is REGISTRY and args.log_level != 'debug':
        for c in (PROCESS_COLLECTOR, PLATFORM_COLLECTOR, GC_COLLECTOR):
            registry.unregister(c)

    try:
        httpd = ThreadingHTTPServer(address, make_handler(registry, args.telemetry_path))
    except OSError as e:
        logger.error('could not listen on %s: %s', args.listen_address, e)
        sys.exit(1)
    logger.info('serving metrics on %s%s', args.listen_address, args.telemetry_path)
    httpd.serve_forever()

if __name__ == '__main__':
    main()
