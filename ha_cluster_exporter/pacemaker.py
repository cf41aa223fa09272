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

import logging, math, time
from collections import namedtuple, OrderedDict
import xml.etree.ElementTree as ET

from .collector import DefaultCollector, ParseError, check_executable, run_command
from .metrics import COUNTER

logger = logging.getLogger(__name__)

# Pacemaker caps scores at one million and prints that as INFINITY.
SCORE_INFINITY = 1000000

NODE_FLAGS = OrderedDict([
    ('online',          'Node is online'),
    ('standby',         'Node is standby'),
    ('standby_onfail',  'Node is standby due to a failure'),
    ('maintenance',     'Node is in maintenance mode'),
    ('pending',         'Node is pending'),
    ('unclean',         'Node is unclean'),
    ('shutdown',        'Node is shutdown'),
    ('expected_up',     'Node is expected up'),
    ('is_dc',           'Node is the DC'),
])
REQUIRED_NODE_FLAGS = ('online', 'standby', 'unclean')

RESOURCE_FLAGS = OrderedDict([
    ('active',          'Resource is active'),
    ('orphaned',        'Resource is orphaned'),
    ('blocked',         'Resource is blocked'),
    ('managed',         'Resource is managed'),
    ('failed',          'Resource failed'),
    ('failure_ignored', 'Resource failure ignored'),
])
REQUIRED_RESOURCE_FLAGS = ('active', 'managed', 'failed')

ROLES = ('Stopped', 'Starting', 'Started', 'Stopping', 'Migrating',
         'Promoting', 'Promoted', 'Demoting', 'Unpromoted', 'Unknown')
# Pre-2.1 names of the promotable roles
ROLE_ALIASES = {'Master': 'Promoted', 'Slave': 'Unpromoted'}

CONSTRAINT_TYPES = OrderedDict([
    ('rsc_location',    'location'),
    ('rsc_colocation',  'colocation'),
    ('rsc_order',       'order'),
    ('rsc_ticket',      'ticket'),
])

Summary = namedtuple('Summary', 'quorate dc_present dc_name dc_id stonith_enabled '
                     'maintenance_mode nodes_configured resources_configured last_change')
Node = namedtuple('Node', ('name', 'id', 'type', 'resources_running') + tuple(NODE_FLAGS))
NodeAttribute = namedtuple('NodeAttribute', 'node name value')
Resource = namedtuple('Resource', ('id', 'instance', 'agent', 'role', 'nodes', 'group', 'clone')
                      + tuple(RESOURCE_FLAGS))
ResourceHistory = namedtuple('ResourceHistory', 'resource node fail_count migration_threshold')
LocationConstraint = namedtuple('LocationConstraint', 'id resource node role score')

ClusterStatus = namedtuple('ClusterStatus', 'summary nodes attributes resources history')
ClusterConfig = namedtuple('ClusterConfig', 'constraints locations')
PacemakerSnapshot = namedtuple('PacemakerSnapshot', 'status config')

def p_time(t):
    return time.mktime(time.strptime(t))

def p_bool(b):
    return 1 if b in ('true', '1') else 0

def p_count(c):
    if c.lstrip('+') == 'INFINITY':
        return math.inf
    return int(c)

def p_score(s):
    if s.lstrip('+') == 'INFINITY':
        return SCORE_INFINITY
    if s == '-INFINITY':
        return -SCORE_INFINITY
    return int(s)

def p_role(r):
    return ROLE_ALIASES.get(r, r)

def _fromstring(xml, roots):
    try:
        root = ET.fromstring(xml)
    except ET.ParseError as e:
        raise ParseError('malformed XML: %s' % e)
    if root.tag not in roots:
        raise ParseError('unexpected root element <%s>' % root.tag)
    return root

def _attrib(root, path, name, parser=str):
    el = root.find(path)
    if el is None or name not in el.attrib:
        logger.warning('crm_mon summary lacks %s/@%s', path, name)
        return None
    try:
        return parser(el.attrib[name])
    except ValueError:
        logger.warning('crm_mon summary has invalid %s/@%s: %r', path, name, el.attrib[name])
        return None

def parse_summary(summary):
    dc = summary.find('current_dc')
    dc = dc.attrib if dc is not None else {}
    return Summary(
        quorate=_attrib(summary, 'current_dc', 'with_quorum', p_bool),
        dc_present=_attrib(summary, 'current_dc', 'present', p_bool),
        dc_name=dc.get('name', ''),
        dc_id=dc.get('id', ''),
        stonith_enabled=_attrib(summary, 'cluster_options', 'stonith-enabled', p_bool),
        maintenance_mode=_attrib(summary, 'cluster_options', 'maintenance-mode', p_bool),
        nodes_configured=_attrib(summary, 'nodes_configured', 'number', int),
        resources_configured=_attrib(summary, 'resources_configured', 'number', int),
        last_change=_attrib(summary, 'last_change', 'time', p_time),
    )

def parse_node(node):
    attrib = node.attrib
    missing = [a for a in ('name', 'id') + REQUIRED_NODE_FLAGS if a not in attrib]
    if missing:
        logger.warning('skipping node %s: missing %s', attrib.get('name', '?'), ', '.join(missing))
        return None
    try:
        running = int(attrib.get('resources_running', '0'))
    except ValueError:
        logger.warning('skipping node %s: invalid resources_running %r',
                       attrib['name'], attrib['resources_running'])
        return None
    flags = {flag: p_bool(attrib.get(flag, 'false')) for flag in NODE_FLAGS}
    return Node(name=attrib['name'], id=attrib['id'], type=attrib.get('type', 'member'),
                resources_running=running, **flags)

def _resource_elements(resources):
    # Yields (element, instance, group, clone) for every primitive.
    for el in resources:
        if el.tag == 'resource':
            yield el, '', '', ''
        elif el.tag == 'group':
            for resource in el.findall('resource'):
                yield resource, '', el.attrib.get('id', ''), ''
        elif el.tag == 'clone':
            clone = el.attrib.get('id', '')
            for i, child in enumerate(el):
                if child.tag == 'resource':
                    yield child, str(i), '', clone
                elif child.tag == 'group':
                    group, _, instance = child.attrib.get('id', '').partition(':')
                    for resource in child.findall('resource'):
                        yield resource, instance or str(i), group, clone

def parse_resource(el, instance, group, clone):
    attrib = el.attrib
    missing = [a for a in ('id', 'role') + REQUIRED_RESOURCE_FLAGS if a not in attrib]
    if missing:
        logger.warning('skipping resource %s: missing %s', attrib.get('id', '?'), ', '.join(missing))
        return None
    resource_id = attrib['id']
    if ':' in resource_id:
        resource_id, instance = resource_id.rsplit(':', 1)
    nodes = tuple(node.attrib['name'] for node in el.findall('node') if 'name' in node.attrib)
    flags = {flag: p_bool(attrib.get(flag, 'false')) for flag in RESOURCE_FLAGS}
    return Resource(id=resource_id, instance=instance, agent=attrib.get('resource_agent', ''),
                    role=p_role(attrib['role']), nodes=nodes, group=group, clone=clone, **flags)

def parse_history(root):
    # instances of an anonymous clone share one entry per node:
    # fail counts add up, the strictest threshold wins
    history = OrderedDict()
    for node in root.findall('./node_history/node'):
        if 'name' not in node.attrib:
            logger.warning('skipping node_history entry without a name')
            continue
        for rsc in node.findall('resource_history'):
            if 'id' not in rsc.attrib:
                logger.warning('skipping resource_history on %s without an id', node.attrib['name'])
                continue
            try:
                fail_count = p_count(rsc.attrib.get('fail-count', '0'))
                threshold = p_count(rsc.attrib['migration-threshold']) \
                    if 'migration-threshold' in rsc.attrib else None
            except ValueError:
                logger.warning('skipping resource_history %s on %s: invalid count',
                               rsc.attrib['id'], node.attrib['name'])
                continue
            key = (rsc.attrib['id'].split(':')[0], node.attrib['name'])
            if key in history:
                previous = history[key]
                fail_count += previous.fail_count
                if threshold is None or previous.migration_threshold is not None \
                        and previous.migration_threshold < threshold:
                    threshold = previous.migration_threshold
            history[key] = ResourceHistory(key[0], key[1], fail_count, threshold)
    return list(history.values())

def parse_crm_mon(xml):
    """Parse the XML status report of crm_mon into a ClusterStatus.

    Both the legacy ``<crm_mon>`` document and the ``<pacemaker-result>``
    document of Pacemaker 2 are understood.
    """
    root = _fromstring(xml, ('crm_mon', 'pacemaker-result'))
    summary = root.find('summary')
    nodes_el = root.find('nodes')
    if summary is None or nodes_el is None:
        raise ParseError('crm_mon output lacks the summary or nodes section')

    nodes = [n for n in map(parse_node, nodes_el.findall('node')) if n is not None]

    attributes = []
    for node in root.findall('./node_attributes/node'):
        for attr in node.findall('attribute'):
            if 'name' not in node.attrib or 'name' not in attr.attrib or 'value' not in attr.attrib:
                logger.warning('skipping incomplete node attribute on %s', node.attrib.get('name', '?'))
                continue
            attributes.append(NodeAttribute(node.attrib['name'], attr.attrib['name'],
                                            attr.attrib['value']))

    resources = []
    resources_el = root.find('resources')
    if resources_el is not None:
        for args in _resource_elements(resources_el):
            resource = parse_resource(*args)
            if resource is not None:
                resources.append(resource)

    return ClusterStatus(summary=parse_summary(summary), nodes=tuple(nodes),
                         attributes=tuple(attributes), resources=tuple(resources),
                         history=tuple(parse_history(root)))

def parse_cib(xml):
    root = _fromstring(xml, ('cib',))
    constraints = root.find('./configuration/constraints')
    if constraints is None:
        raise ParseError('CIB lacks a constraints section')

    counts = OrderedDict((kind, len(constraints.findall(tag)))
                         for tag, kind in CONSTRAINT_TYPES.items())

    locations = []
    for el in constraints.findall('rsc_location'):
        attrib = el.attrib
        # rule based and pattern based constraints are not bound to a node
        if not all(a in attrib for a in ('id', 'rsc', 'node', 'score')):
            continue
        try:
            score = p_score(attrib['score'])
        except ValueError:
            logger.warning('skipping location constraint %s: invalid score %r',
                           attrib['id'], attrib['score'])
            continue
        locations.append(LocationConstraint(attrib['id'], attrib['rsc'], attrib['node'],
                                            attrib.get('role', ''), score))

    return ClusterConfig(constraints=counts, locations=tuple(locations))

class PacemakerCollector(DefaultCollector):
    subsystem = 'pacemaker'

    def __init__(self, crm_mon_path, cibadmin_path, **kwargs):
        super().__init__(**kwargs)
        check_executable(crm_mon_path)
        check_executable(cibadmin_path)
        self.crm_mon_path = crm_mon_path
        self.cibadmin_path = cibadmin_path

        self.set_descriptor('quorate', 'Whether the cluster has quorum')
        self.set_descriptor('stonith_enabled', 'Whether STONITH is enabled')
        self.set_descriptor('maintenance_mode', 'Whether the cluster is in maintenance mode')
        self.set_descriptor('dc_present', 'Whether the cluster has an active DC')
        self.set_descriptor('dc_info', 'The current DC, by name and id', ['node', 'id'])
        self.set_descriptor('nodes_configured', 'Number of configured nodes')
        self.set_descriptor('resources_configured', 'Number of configured resources')
        self.set_descriptor('config_last_change', 'Last CIB change time')

        node_labels = ['node', 'id', 'type']
        for flag, text in NODE_FLAGS.items():
            self.set_descriptor('node_' + flag, text, node_labels)
        self.set_descriptor('node_resources_running',
                            'Number of resources running on the node', node_labels)
        self.set_descriptor('node_attributes', 'Node attributes, by name and value',
                            ['node', 'name', 'value'])

        resource_labels = ['resource', 'instance', 'node', 'agent', 'group', 'clone']
        for flag, text in RESOURCE_FLAGS.items():
            self.set_descriptor('resource_' + flag, text, resource_labels)
        self.set_descriptor('resource_role', 'Current role of the resource, one series per role',
                            resource_labels + ['role'])
        self.set_descriptor('fail_count', 'Number of failures of a resource on a node',
                            ['resource', 'node'], COUNTER)
        self.set_descriptor('migration_threshold',
                            'Failures allowed before a resource is moved away from a node',
                            ['resource', 'node'])

        self.set_descriptor('constraints', 'Number of constraints, by type', ['type'])
        self.set_descriptor('location_constraints', 'Score of node location constraints',
                            ['constraint', 'node', 'resource', 'role'])

    def snapshot(self):
        status = parse_crm_mon(run_command([self.crm_mon_path, '-X', '--inactive'], self.timeout))
        config = parse_cib(run_command([self.cibadmin_path, '--query', '--local'], self.timeout))
        return PacemakerSnapshot(status, config)

    def collect_metrics(self, metrics):
        snapshot = self.snapshot()
        summary = snapshot.status.summary

        for name in ('quorate', 'stonith_enabled', 'maintenance_mode', 'dc_present',
                     'nodes_configured', 'resources_configured'):
            if getattr(summary, name) is not None:
                metrics.add(name, [], getattr(summary, name))
        if summary.dc_present and summary.dc_name:
            metrics.add('dc_info', [summary.dc_name, summary.dc_id], 1)
        if summary.last_change is not None:
            metrics.add('config_last_change', [], summary.last_change)

        for node in snapshot.status.nodes:
            labels = [node.name, node.id, node.type]
            for flag in NODE_FLAGS:
                metrics.add('node_' + flag, labels, getattr(node, flag))
            metrics.add('node_resources_running', labels, node.resources_running)

        for attr in snapshot.status.attributes:
            metrics.add('node_attributes', [attr.node, attr.name, attr.value], 1)

        for resource in snapshot.status.resources:
            for node in resource.nodes or ('',):
                labels = [resource.id, resource.instance, node, resource.agent,
                          resource.group, resource.clone]
                for flag in RESOURCE_FLAGS:
                    metrics.add('resource_' + flag, labels, getattr(resource, flag))
                if resource.role not in ROLES:
                    logger.warning('resource %s has unknown role %s', resource.id, resource.role)
                metrics.one_hot('resource_role', labels, ROLES, resource.role)

        for entry in snapshot.status.history:
            metrics.add('fail_count', [entry.resource, entry.node], entry.fail_count)
            if entry.migration_threshold is not None:
                metrics.add('migration_threshold', [entry.resource, entry.node],
                            entry.migration_threshold)

        for kind, count in snapshot.config.constraints.items():
            metrics.add('constraints', [kind], count)
        for loc in snapshot.config.locations:
            metrics.add('location_constraints', [loc.id, loc.node, loc.resource, loc.role], loc.score)
