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

import json, logging, os
from collections import namedtuple

from .collector import CollectorError, DefaultCollector, ParseError, check_executable, run_command
from .metrics import GAUGE, COUNTER

logger = logging.getLogger(__name__)

SPLIT_BRAIN_PREFIX = 'drbd-split-brain-detected-'

ROLES = ('Primary', 'Secondary', 'Unknown')
DISK_STATES = ('Diskless', 'Attaching', 'Detaching', 'Failed', 'Negotiating', 'Inconsistent',
               'Outdated', 'DUnknown', 'Consistent', 'UpToDate')
CONNECTION_STATES = ('StandAlone', 'Disconnecting', 'Unconnected', 'Timeout', 'BrokenPipe',
                     'NetworkFailure', 'ProtocolError', 'TearDown', 'Connecting', 'Connected')

# (drbdsetup field, metric, help, kind)
VOLUME_STATS = (
    ('written',       'written',        'KiB written to the volume', COUNTER),
    ('read',          'read',           'KiB read from the volume', COUNTER),
    ('al-writes',     'al_writes',      'Number of updates of the activity log area', COUNTER),
    ('bm-writes',     'bm_writes',      'Number of updates of the bitmap area', COUNTER),
    ('upper-pending', 'upper_pending',  'Block I/O requests forwarded to DRBD but not yet answered', GAUGE),
    ('lower-pending', 'lower_pending',  'Open requests to the local I/O sub-system', GAUGE),
)
PEER_DEVICE_STATS = (
    ('percent-in-sync', 'connections_sync',        'Percentage of the volume in sync with the peer', GAUGE),
    ('received',        'connections_received',    'KiB received from the peer', COUNTER),
    ('sent',            'connections_sent',        'KiB sent to the peer', COUNTER),
    ('pending',         'connections_pending',     'Requests sent to the peer but not yet answered', GAUGE),
    ('unacked',         'connections_unacked',     'Requests received from the peer but not yet answered', GAUGE),
    ('out-of-sync',     'connections_out_of_sync', 'KiB out of sync with the peer', GAUGE),
)

Volume = namedtuple('Volume', 'number disk_state quorum stats')
PeerDevice = namedtuple('PeerDevice', 'volume disk_state stats')
Connection = namedtuple('Connection', 'peer_node_id name state peer_role peer_devices')
DRBDResource = namedtuple('DRBDResource', 'name role volumes connections')
SplitBrain = namedtuple('SplitBrain', 'resource volume detected')
DRBDSnapshot = namedtuple('DRBDSnapshot', 'resources split_brains')

def _stats(obj, fields):
    stats = {}
    for key, metric, _, _ in fields:
        value = obj.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            stats[metric] = value
    return stats

def _missing(obj, keys):
    return [k for k in keys if k not in obj]

def parse_volume(resource, device):
    missing = _missing(device, ('volume', 'disk-state'))
    if missing:
        logger.warning('skipping a volume of %s: missing %s', resource, ', '.join(missing))
        return None
    quorum = device.get('quorum')
    return Volume(str(device['volume']), device['disk-state'],
                  quorum if isinstance(quorum, bool) else None, _stats(device, VOLUME_STATS))

def parse_connection(resource, conn):
    missing = _missing(conn, ('peer-node-id', 'connection-state'))
    if missing:
        logger.warning('skipping a connection of %s: missing %s', resource, ', '.join(missing))
        return None
    peer_devices = []
    for dev in conn.get('peer_devices', []):
        missing = _missing(dev, ('volume', 'peer-disk-state'))
        if missing:
            logger.warning('skipping a peer device of %s: missing %s', resource, ', '.join(missing))
            continue
        peer_devices.append(PeerDevice(str(dev['volume']), dev['peer-disk-state'],
                                       _stats(dev, PEER_DEVICE_STATS)))
    return Connection(str(conn['peer-node-id']), conn.get('name', ''), conn['connection-state'],
                      conn.get('peer-role', 'Unknown'), tuple(peer_devices))

def parse_status(text):
    """Parse ``drbdsetup status --json`` output into DRBDResources."""
    try:
        data = json.loads(text)
    except ValueError as e:
        raise ParseError('malformed drbdsetup JSON: %s' % e)
    if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
        raise ParseError('drbdsetup JSON is not a list of resources')

    resources = []
    for res in data:
        missing = _missing(res, ('name', 'role'))
        if missing:
            logger.warning('skipping DRBD resource %s: missing %s',
                           res.get('name', '?'), ', '.join(missing))
            continue
        volumes = [parse_volume(res['name'], d) for d in res.get('devices', [])]
        connections = [parse_connection(res['name'], c) for c in res.get('connections', [])]
        resources.append(DRBDResource(res['name'], res['role'],
                                      tuple(v for v in volumes if v is not None),
                                      tuple(c for c in connections if c is not None)))
    return resources

def scan_split_brain(directory):
    """Find the marker files left by the DRBD split-brain notification hook.

    Markers are named ``drbd-split-brain-detected-<resource>-<volume>``.
    """
    try:
        entries = list(os.scandir(directory))
    except FileNotFoundError:
        logger.debug('split brain directory %s does not exist', directory)
        return []
    except OSError as e:
        raise CollectorError('could not scan %s: %s' % (directory, e))

    markers = []
    for entry in sorted(entries, key=lambda e: e.name):
        if not entry.name.startswith(SPLIT_BRAIN_PREFIX) or not entry.is_file():
            continue
        resource, sep, volume = entry.name[len(SPLIT_BRAIN_PREFIX):].rpartition('-')
        if not sep or not resource:
            logger.warning('ignoring split brain marker %s: no volume in its name', entry.name)
            continue
        try:
            detected = entry.stat().st_mtime
        except OSError as e:
            logger.warning('ignoring split brain marker %s: %s', entry.name, e)
            continue
        markers.append(SplitBrain(resource, volume, detected))
    return markers

def _check_state(kind, state, states):
    if state not in states:
        logger.warning('unknown DRBD %s %s', kind, state)

class DRBDCollector(DefaultCollector):
    subsystem = 'drbd'

    def __init__(self, drbdsetup_path, split_brain_dir, **kwargs):
        super().__init__(**kwargs)
        check_executable(drbdsetup_path)
        self.drbdsetup_path = drbdsetup_path
        self.split_brain_dir = split_brain_dir

        volume_labels = ['resource', 'volume']
        peer_labels = ['resource', 'peer_node_id']
        self.set_descriptor('role', 'Role of the resource, one series per role',
                            volume_labels + ['role'])
        self.set_descriptor('disk_state', 'Local disk state, one series per state',
                            volume_labels + ['state'])
        for _, metric, text, kind in VOLUME_STATS:
            self.set_descriptor(metric, text, volume_labels, kind)
        self.set_descriptor('quorum', 'Whether the volume has quorum', volume_labels)

        self.set_descriptor('connection_state', 'Connection state, one series per state',
                            peer_labels + ['peer', 'state'])
        self.set_descriptor('peer_role', 'Role of the peer, one series per role',
                            peer_labels + ['role'])
        self.set_descriptor('peer_disk_state', 'Disk state of the peer, one series per state',
                            peer_labels + ['volume', 'state'])
        for _, metric, text, kind in PEER_DEVICE_STATS:
            self.set_descriptor(metric, text, peer_labels + ['volume'], kind)

        self.set_descriptor('split_brain', 'Whether a split brain was detected', volume_labels)
        self.set_descriptor('split_brain_timestamp_seconds', 'When a split brain was detected',
                            volume_labels)
        self.set_descriptor('split_brain_detections', 'Number of split brain markers present',
                            kind=COUNTER)

    def snapshot(self):
        resources = parse_status(run_command([self.drbdsetup_path, 'status', '--json'], self.timeout))
        return DRBDSnapshot(tuple(resources), tuple(scan_split_brain(self.split_brain_dir)))

    def collect_metrics(self, metrics):
        snapshot = self.snapshot()

        for res in snapshot.resources:
            _check_state('role', res.role, ROLES)
            for vol in res.volumes:
                labels = [res.name, vol.number]
                metrics.one_hot('role', labels, ROLES, res.role)
                _check_state('disk state', vol.disk_state, DISK_STATES)
                metrics.one_hot('disk_state', labels, DISK_STATES, vol.disk_state)
                for metric, value in sorted(vol.stats.items()):
                    metrics.add(metric, labels, value)
                if vol.quorum is not None:
                    metrics.add('quorum', labels, 1 if vol.quorum else 0)

            for conn in res.connections:
                labels = [res.name, conn.peer_node_id]
                _check_state('connection state', conn.state, CONNECTION_STATES)
                metrics.one_hot('connection_state', labels + [conn.name], CONNECTION_STATES,
                                conn.state)
                metrics.one_hot('peer_role', labels, ROLES, conn.peer_role)
                for dev in conn.peer_devices:
                    _check_state('disk state', dev.disk_state, DISK_STATES)
                    metrics.one_hot('peer_disk_state', labels + [dev.volume], DISK_STATES,
                                    dev.disk_state)
                    for metric, value in sorted(dev.stats.items()):
                        metrics.add(metric, labels + [dev.volume], value)

        for marker in snapshot.split_brains:
            metrics.add('split_brain', [marker.resource, marker.volume], 1)
            metrics.add('split_brain_timestamp_seconds', [marker.resource, marker.volume],
                        marker.detected)
        metrics.add('split_brain_detections', [], len(snapshot.split_brains))
