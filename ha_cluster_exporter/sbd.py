# vim: expandtab:ts=4
#
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

import logging, re
from collections import namedtuple, OrderedDict

from .collector import (DefaultCollector, CommandFailed, CommandTimeout, check_executable,
                        check_file, read_file, run_command)

logger = logging.getLogger(__name__)

DEFAULT_WATCHDOG_DEVICE = '/dev/watchdog'
DEVICE_STATES = ('healthy', 'unhealthy')
TIMEOUT_RE = re.compile(r'^Timeout \((\w+)\)\s*:\s*(\d+)', re.M)
TIMEOUT_TYPES = ('watchdog', 'msgwait')

# sbd follows corosync membership and quorum through its pacemaker
# integration, so both flags come from SBD_PACEMAKER.
INTEGRATIONS = OrderedDict([
    ('pacemaker', 'SBD_PACEMAKER'),
    ('corosync',  'SBD_PACEMAKER'),
])

SBDDevice = namedtuple('SBDDevice', 'path healthy timeouts')
SBDSnapshot = namedtuple('SBDSnapshot', 'devices watchdog_device watchdog_timeout '
                         'watchdog_armed integrations')

def p_bool(b):
    return b.lower() in ('yes', 'true', 'y', '1', 'on')

def parse_config(text):
    """Parse the KEY=value lines of the sbd sysconfig file."""
    config = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        key, sep, value = line.partition('=')
        if not sep:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in '"\'':
            value = value[1:-1]
        config[key.strip()] = value
    return config

def parse_devices(config):
    return [d.strip() for d in config.get('SBD_DEVICE', '').split(';') if d.strip()]

def parse_dump(text):
    timeouts = OrderedDict()
    for kind, value in TIMEOUT_RE.findall(text):
        if kind in TIMEOUT_TYPES:
            timeouts[kind] = int(value)
    return timeouts

class SBDCollector(DefaultCollector):
    subsystem = 'sbd'

    def __init__(self, sbd_path, config_path, **kwargs):
        super().__init__(**kwargs)
        check_executable(sbd_path)
        check_file(config_path)
        self.sbd_path = sbd_path
        self.config_path = config_path

        self.set_descriptor('devices_configured', 'Number of configured SBD devices')
        self.set_descriptor('devices', 'Health of SBD devices, one series per state',
                            ['device', 'status'])
        self.set_descriptor('timeouts', 'SBD timeouts stored on each device, in seconds',
                            ['device', 'type'])
        self.set_descriptor('watchdog_armed', 'Whether SBD is configured to use a watchdog',
                            ['device'])
        self.set_descriptor('watchdog_timeout', 'Configured watchdog timeout, in seconds')
        self.set_descriptor('integration', 'Whether SBD integrates with a cluster component',
                            ['component'])

    def device_healthy(self, device):
        try:
            run_command([self.sbd_path, '-d', device, 'list'], self.timeout)
        except (CommandFailed, CommandTimeout) as e:
            logger.warning('SBD device %s is unhealthy: %s', device, e)
            return False
        return True

    def device_timeouts(self, device):
        try:
            output = run_command([self.sbd_path, '-d', device, 'dump'], self.timeout)
        except (CommandFailed, CommandTimeout) as e:
            logger.warning('could not dump SBD device %s: %s', device, e)
            return OrderedDict()
        timeouts = parse_dump(output)
        if not timeouts:
            logger.warning('SBD device %s dump reports no timeouts', device)
        return timeouts

    def snapshot(self):
        config = parse_config(read_file(self.config_path))

        devices = []
        for path in parse_devices(config):
            healthy = self.device_healthy(path)
            timeouts = self.device_timeouts(path) if healthy else OrderedDict()
            devices.append(SBDDevice(path, healthy, timeouts))

        watchdog_device = config.get('SBD_WATCHDOG_DEV', DEFAULT_WATCHDOG_DEVICE)
        armed = bool(watchdog_device) and p_bool(config.get('SBD_WATCHDOG', 'yes'))

        watchdog_timeout = None
        if 'SBD_WATCHDOG_TIMEOUT' in config:
            try:
                watchdog_timeout = int(config['SBD_WATCHDOG_TIMEOUT'])
            except ValueError:
                logger.warning('invalid SBD_WATCHDOG_TIMEOUT %r in %s',
                               config['SBD_WATCHDOG_TIMEOUT'], self.config_path)

        integrations = OrderedDict((component, p_bool(config.get(key, 'yes')))
                                   for component, key in INTEGRATIONS.items())

        return SBDSnapshot(tuple(devices), watchdog_device, watchdog_timeout, armed, integrations)

    def collect_metrics(self, metrics):
        snapshot = self.snapshot()

        metrics.add('devices_configured', [], len(snapshot.devices))
        for device in snapshot.devices:
            metrics.one_hot('devices', [device.path], DEVICE_STATES,
                            'healthy' if device.healthy else 'unhealthy')
            for kind, value in device.timeouts.items():
                metrics.add('timeouts', [device.path, kind], value)

        metrics.add('watchdog_armed', [snapshot.watchdog_device], 1 if snapshot.watchdog_armed else 0)
        if snapshot.watchdog_timeout is not None:
            metrics.add('watchdog_timeout', [], snapshot.watchdog_timeout)
        for component, enabled in snapshot.integrations.items():
            metrics.add('integration', [component], 1 if enabled else 0)
