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

from .collector import DefaultCollector, ParseError, check_executable, run_command

logger = logging.getLogger(__name__)

LOCAL_NODE_RE = re.compile(r'^Local node ID (\d+)', re.M)
# corosync 2 (totem) reports rings, corosync 3 (knet) reports links
RING_HEADER_RE = re.compile(r'^(?:RING|LINK) ID (\d+)')
KNET_PEER_RE = re.compile(r'^nodeid:?\s+(\d+):\s*(\S+)')
KNET_HEALTHY = ('localhost', 'connected')

# corosync-quorumtool field -> quorum_votes type label
VOTE_FIELDS = OrderedDict([
    ('Expected votes',   'expected_votes'),
    ('Highest expected', 'highest_expected'),
    ('Total votes',      'total_votes'),
    ('Quorum',           'quorum'),
])

Ring = namedtuple('Ring', 'number address faulty')
RingStatus = namedtuple('RingStatus', 'node_id rings')
Member = namedtuple('Member', 'node_id votes name local')
QuorumStatus = namedtuple('QuorumStatus', 'node_id quorate nodes votes members')
CorosyncSnapshot = namedtuple('CorosyncSnapshot',
                              'node_id rings quorate nodes votes members')

def _ring(number, address, status, peers):
    if address is None:
        logger.warning('skipping ring %s: no address reported', number)
        return None
    faulty = 'FAULTY' in status or any(s not in KNET_HEALTHY for s in peers)
    return Ring(number, address, faulty)

def parse_cfgtool(text):
    """Parse ``corosync-cfgtool -s`` output into a RingStatus."""
    m = LOCAL_NODE_RE.search(text)
    if m is None:
        raise ParseError('corosync-cfgtool output lacks the local node ID')

    sections = []
    current = None
    for line in text.splitlines():
        line = line.strip()
        header = RING_HEADER_RE.match(line)
        if header:
            current = {'number': header.group(1), 'address': None, 'status': '', 'peers': []}
            sections.append(current)
            continue
        if current is None:
            continue
        key, sep, value = line.partition('=')
        key, value = key.strip(), value.strip()
        if sep and key in ('id', 'addr'):
            current['address'] = value
        elif sep and key == 'status':
            current['status'] = value
        else:
            peer = KNET_PEER_RE.match(line)
            if peer:
                current['peers'].append(peer.group(2))

    rings = [r for r in (_ring(**s) for s in sections) if r is not None]
    if not rings:
        raise ParseError('corosync-cfgtool output lists no ring or link')
    return RingStatus(m.group(1), tuple(rings))

def _fields(text):
    fields = {}
    for line in text.splitlines():
        key, sep, value = line.partition(':')
        if sep and key.strip() and not key.startswith(' '):
            fields.setdefault(key.strip(), value.strip())
    return fields

def parse_members(text):
    members = []
    lines = iter(text.splitlines())
    for line in lines:
        if line.split()[:1] == ['Nodeid']:
            break
    for line in lines:
        tokens = line.split()
        if not tokens:
            break
        local = tokens[-1] == '(local)'
        if local:
            tokens = tokens[:-1]
        try:
            votes = int(tokens[1])
        except (IndexError, ValueError):
            logger.warning('skipping unparsable membership line %r', line)
            continue
        name = tokens[-1] if len(tokens) > 2 else ''
        members.append(Member(tokens[0], votes, name, local))
    return members

def parse_quorumtool(text):
    """Parse ``corosync-quorumtool -p`` output into a QuorumStatus."""
    fields = _fields(text)
    if fields.get('Quorate') not in ('Yes', 'No'):
        raise ParseError('corosync-quorumtool output lacks the quorate state')

    votes = OrderedDict()
    for field, kind in VOTE_FIELDS.items():
        value = fields.get(field, '').split()
        try:
            votes[kind] = int(value[0])
        except (IndexError, ValueError):
            logger.warning('corosync-quorumtool output lacks a valid %r', field)

    try:
        nodes = int(fields['Nodes'])
    except (KeyError, ValueError):
        logger.warning('corosync-quorumtool output lacks a valid node count')
        nodes = None

    return QuorumStatus(node_id=fields.get('Node ID', ''), quorate=fields['Quorate'] == 'Yes',
                        nodes=nodes, votes=votes, members=tuple(parse_members(text)))

def merge(ring_status, quorum_status):
    if quorum_status.node_id and quorum_status.node_id != ring_status.node_id:
        logger.warning('corosync-cfgtool reports local node %s but corosync-quorumtool reports %s',
                       ring_status.node_id, quorum_status.node_id)
    local = [m for m in quorum_status.members if m.local]
    if local and local[0].node_id != ring_status.node_id:
        logger.warning('local member %s does not match local node %s',
                       local[0].node_id, ring_status.node_id)
    return CorosyncSnapshot(node_id=ring_status.node_id, rings=ring_status.rings,
                            quorate=quorum_status.quorate, nodes=quorum_status.nodes,
                            votes=quorum_status.votes, members=quorum_status.members)

class CorosyncCollector(DefaultCollector):
    subsystem = 'corosync'

    def __init__(self, cfgtool_path, quorumtool_path, **kwargs):
        super().__init__(**kwargs)
        check_executable(cfgtool_path)
        check_executable(quorumtool_path)
        self.cfgtool_path = cfgtool_path
        self.quorumtool_path = quorumtool_path

        self.set_descriptor('quorate', 'Whether or not the cluster is quorate')
        self.set_descriptor('quorum_votes', 'Cluster quorum votes, by type', ['type'])
        self.set_descriptor('nodes', 'Number of nodes in the membership')
        self.set_descriptor('ring_errors', 'Number of faulty rings')
        self.set_descriptor('ring_status', 'Ring fault state (1 = faulty, 0 = ok)',
                            ['node_id', 'number', 'address'])
        self.set_descriptor('member_votes', 'Votes of each cluster member',
                            ['node_id', 'node', 'local'])

    def snapshot(self):
        # cfgtool exits 1 when a ring is faulty, quorumtool exits 2 without quorum
        rings = parse_cfgtool(run_command([self.cfgtool_path, '-s'], self.timeout, (0, 1)))
        quorum = parse_quorumtool(run_command([self.quorumtool_path, '-p'], self.timeout, (0, 2)))
        return merge(rings, quorum)

    def collect_metrics(self, metrics):
        snapshot = self.snapshot()

        metrics.add('quorate', [], 1 if snapshot.quorate else 0)
        for kind, value in snapshot.votes.items():
            metrics.add('quorum_votes', [kind], value)
        if snapshot.nodes is not None:
            metrics.add('nodes', [], snapshot.nodes)

        metrics.add('ring_errors', [], sum(1 for ring in snapshot.rings if ring.faulty))
        for ring in snapshot.rings:
            metrics.add('ring_status', [snapshot.node_id, ring.number, ring.address],
                        1 if ring.faulty else 0)

        for member in snapshot.members:
            metrics.add('member_votes', [member.node_id, member.name,
                                         'true' if member.local else 'false'], member.votes)
