import math
import time

import pytest
from prometheus_client import CollectorRegistry, generate_latest

from ha_cluster_exporter import pacemaker
from ha_cluster_exporter.collector import CollectorError, CommandFailed, ParseError
from ha_cluster_exporter.pacemaker import PacemakerCollector, ROLES, parse_cib, parse_crm_mon

from .helpers import all_samples, assert_label_arity, fake_run_command, fixture, series, value

P = 'ha_cluster_pacemaker_'


class TestParseCrmMon:

    def test_summary(self):
        summary = parse_crm_mon(fixture('crm_mon.xml')).summary
        assert summary.quorate == 1
        assert summary.dc_present == 1
        assert summary.dc_name == 'node01'
        assert summary.dc_id == '1084783375'
        assert summary.stonith_enabled == 1
        assert summary.maintenance_mode == 0
        assert summary.nodes_configured == 2
        assert summary.resources_configured == 8
        assert summary.last_change == time.mktime(time.strptime('Fri Oct 18 11:48:22 2019'))

    def test_nodes(self):
        nodes = parse_crm_mon(fixture('crm_mon.xml')).nodes
        # the third node has no name and is skipped
        assert [n.name for n in nodes] == ['node01', 'node02']
        assert nodes[0].is_dc == 1 and nodes[1].is_dc == 0
        assert nodes[0].online == 1
        assert nodes[0].resources_running == 5
        assert nodes[1].type == 'member'

    def test_resources(self):
        resources = parse_crm_mon(fixture('crm_mon.xml')).resources
        assert [(r.id, r.instance, r.role, r.nodes, r.group, r.clone) for r in resources] == [
            ('stonith-sbd', '', 'Started', ('node01',), '', ''),
            ('rsc_ip_PRD_HDB00', '', 'Stopped', (), '', ''),
            ('rsc_SAPHana_PRD_HDB00', '0', 'Promoted', ('node01',), '', 'msl_SAPHana_PRD_HDB00'),
            ('rsc_SAPHana_PRD_HDB00', '1', 'Unpromoted', ('node02',), '', 'msl_SAPHana_PRD_HDB00'),
            ('rsc_ip_HA1_ASCS00', '', 'Started', ('node01',), 'grp_HA1_ASCS00', ''),
            ('rsc_sap_HA1_ASCS00', '', 'Started', ('node01',), 'grp_HA1_ASCS00', ''),
        ]
        sap = resources[-1]
        assert (sap.managed, sap.failed, sap.active) == (0, 1, 1)
        assert sap.agent == 'ocf::heartbeat:SAPInstance'

    def test_incomplete_resource_is_skipped(self, caplog):
        resources = parse_crm_mon(fixture('crm_mon.xml')).resources
        assert 'rsc_broken' not in [r.id for r in resources]
        assert 'skipping resource rsc_broken' in caplog.text

    def test_node_attributes(self):
        attributes = parse_crm_mon(fixture('crm_mon.xml')).attributes
        assert ('node01', 'master-rsc_SAPHana_PRD_HDB00', '150') in attributes
        assert len(attributes) == 3

    def test_history(self):
        history = parse_crm_mon(fixture('crm_mon.xml')).history
        assert [tuple(h) for h in history] == [
            ('rsc_sap_HA1_ASCS00', 'node01', 2, 3),
            ('stonith-sbd', 'node01', 0, 5000),
            ('rsc_SAPHana_PRD_HDB00', 'node02', math.inf, 5000),
        ]

    def test_clone_instances_on_one_node_are_merged(self):
        xml = fixture('crm_mon.xml').replace(
            '<resource_history id="rsc_SAPHana_PRD_HDB00:1" orphan="false" migration-threshold="5000" fail-count="INFINITY" />',
            '<resource_history id="rsc_SAPHana_PRD_HDB00:0" orphan="false" migration-threshold="3" fail-count="1" />\n'
            '            <resource_history id="rsc_SAPHana_PRD_HDB00:1" orphan="false" migration-threshold="5000" fail-count="2" />')
        history = parse_crm_mon(xml).history
        assert [tuple(h) for h in history if h.node == 'node02'] == [
            ('rsc_SAPHana_PRD_HDB00', 'node02', 3, 3),
        ]

    def test_pacemaker_2_output(self):
        status = parse_crm_mon(fixture('crm_mon_v2.xml'))
        assert status.summary.quorate == 0
        assert status.summary.maintenance_mode == 1
        assert [n.name for n in status.nodes] == ['alpha', 'beta']
        assert status.nodes[1].unclean == 1
        # cloned group, the bundle is not understood and ignored
        assert [(r.id, r.instance, r.group, r.clone) for r in status.resources] == [
            ('rsc_dummy', '0', 'grp_dummy', 'cln_dummy'),
        ]
        assert status.history == ()

    @pytest.mark.parametrize('xml', [
        '',
        '<crm_mon><summary>',
        '<cib/>',
        '<crm_mon version="1.1"><nodes/></crm_mon>',
        'not xml at all',
    ])
    def test_malformed(self, xml):
        with pytest.raises(ParseError):
            parse_crm_mon(xml)


class TestParseCib:

    def test_constraint_counts(self):
        config = parse_cib(fixture('cib.xml'))
        assert dict(config.constraints) == {'location': 4, 'colocation': 1, 'order': 1, 'ticket': 0}

    def test_location_constraints(self):
        config = parse_cib(fixture('cib.xml'))
        assert [tuple(loc) for loc in config.locations] == [
            ('cli-prefer-msl_SAPHana_PRD_HDB00', 'msl_SAPHana_PRD_HDB00', 'node01', 'Started', 1000000),
            ('cli-ban-grp_HA1_ASCS00-on-node02', 'grp_HA1_ASCS00', 'node02', '', -1000000),
            ('loc_ip_prefers_node02', 'rsc_ip_PRD_HDB00', 'node02', '', 100),
        ]

    @pytest.mark.parametrize('xml', ['', '<cib><configuration/></cib>', '<crm_mon/>', '<cib'])
    def test_malformed(self, xml):
        with pytest.raises(ParseError):
            parse_cib(xml)


@pytest.fixture
def tools(executable):
    return executable('crm_mon'), executable('cibadmin')


@pytest.fixture
def outputs(tools):
    crm_mon, cibadmin = tools
    return {
        (crm_mon, '-X', '--inactive'): fixture('crm_mon.xml'),
        (cibadmin, '--query', '--local'): fixture('cib.xml'),
    }


class TestPacemakerCollector:

    def test_missing_executable(self, tmp_path, executable):
        with pytest.raises(CollectorError):
            PacemakerCollector(str(tmp_path / 'crm_mon'), executable('cibadmin'))

    def test_collect(self, monkeypatch, tools, outputs):
        monkeypatch.setattr(pacemaker, 'run_command', fake_run_command(outputs))
        c = PacemakerCollector(*tools)
        families, error = c.scrape()
        assert error is None
        assert_label_arity(c, families)

        # 8 summary, 2 nodes x 10, 3 attributes, 6 resources x (6 flags + roles),
        # 3 fail counts, 3 thresholds, 4 constraint types, 3 locations
        assert len(all_samples(families)) == 8 + 20 + 3 + 6 * (6 + len(ROLES)) + 6 + 7

        assert value(families, P + 'quorate') == 1
        assert value(families, P + 'stonith_enabled') == 1
        assert value(families, P + 'dc_info', node='node01', id='1084783375') == 1
        assert value(families, P + 'node_is_dc', node='node01', id='1084783375', type='member') == 1
        assert value(families, P + 'node_online', node='node02', id='1084783376', type='member') == 1

        labels = dict(resource='rsc_sap_HA1_ASCS00', instance='', node='node01',
                      agent='ocf::heartbeat:SAPInstance', group='grp_HA1_ASCS00', clone='')
        assert value(families, P + 'resource_failed', **labels) == 1
        assert value(families, P + 'resource_managed', **labels) == 0

        assert value(families, P + 'fail_count_total', resource='rsc_sap_HA1_ASCS00', node='node01') == 2
        assert value(families, P + 'fail_count_total',
                     resource='rsc_SAPHana_PRD_HDB00', node='node02') == math.inf
        assert value(families, P + 'migration_threshold', resource='stonith-sbd', node='node01') == 5000

        assert value(families, P + 'constraints', type='colocation') == 1
        assert value(families, P + 'location_constraints', constraint='loc_ip_prefers_node02',
                     node='node02', resource='rsc_ip_PRD_HDB00', role='') == 100
        assert value(families, P + 'node_attributes', node='node02', name='hana_prd_roles',
                     value='4:S:master1:master:worker:master') == 1

    def test_role_is_one_hot(self, monkeypatch, tools, outputs):
        monkeypatch.setattr(pacemaker, 'run_command', fake_run_command(outputs))
        families, _ = PacemakerCollector(*tools).scrape()

        roles = {}
        for s in all_samples(families):
            if s.name == P + 'resource_role' and s.labels['instance'] == '0':
                roles[s.labels['role']] = s.value
        assert set(roles) == set(ROLES)
        assert roles['Promoted'] == 1
        assert sum(roles.values()) == 1

    def test_stopped_resource_has_empty_node(self, monkeypatch, tools, outputs):
        monkeypatch.setattr(pacemaker, 'run_command', fake_run_command(outputs))
        families, _ = PacemakerCollector(*tools).scrape()
        stopped = [l for l in series(families, P + 'resource_active')
                   if l['resource'] == 'rsc_ip_PRD_HDB00']
        assert [l['node'] for l in stopped] == ['']

    def test_cibadmin_failure_fails_the_scrape(self, monkeypatch, tools, outputs):
        crm_mon, cibadmin = tools
        outputs[(cibadmin, '--query', '--local')] = CommandFailed([cibadmin], 105, 'no CIB')
        monkeypatch.setattr(pacemaker, 'run_command', fake_run_command(outputs))
        families, error = PacemakerCollector(*tools).scrape()
        assert families == []
        assert isinstance(error, CommandFailed)

    def test_malformed_output_fails_the_scrape(self, monkeypatch, tools, outputs):
        crm_mon, _ = tools
        outputs[(crm_mon, '-X', '--inactive')] = fixture('crm_mon.xml')[:400]
        monkeypatch.setattr(pacemaker, 'run_command', fake_run_command(outputs))
        families, error = PacemakerCollector(*tools).scrape()
        assert families == []
        assert isinstance(error, ParseError)

    def test_clone_instances_give_one_fail_count_series(self, monkeypatch, tools, outputs):
        crm_mon, _ = tools
        outputs[(crm_mon, '-X', '--inactive')] = fixture('crm_mon.xml').replace(
            '<resource_history id="rsc_SAPHana_PRD_HDB00:1"',
            '<resource_history id="rsc_SAPHana_PRD_HDB00:0" fail-count="1" />\n'
            '            <resource_history id="rsc_SAPHana_PRD_HDB00:1"')
        monkeypatch.setattr(pacemaker, 'run_command', fake_run_command(outputs))
        registry = CollectorRegistry()
        registry.register(PacemakerCollector(*tools))
        lines = [l for l in generate_latest(registry).decode().splitlines()
                 if l.startswith(P + 'fail_count_total{') and 'node="node02"' in l]
        assert lines == [P + 'fail_count_total{node="node02",resource="rsc_SAPHana_PRD_HDB00"} +Inf']

    def test_unknown_role_keeps_every_role_series(self, monkeypatch, tools, outputs, caplog):
        crm_mon, _ = tools
        outputs[(crm_mon, '-X', '--inactive')] = fixture('crm_mon.xml').replace(
            'resource_agent="stonith:external/sbd" role="Started"',
            'resource_agent="stonith:external/sbd" role="Reloading"')
        monkeypatch.setattr(pacemaker, 'run_command', fake_run_command(outputs))
        families, error = PacemakerCollector(*tools).scrape()
        assert error is None

        roles = {}
        for s in all_samples(families):
            if s.name == P + 'resource_role' and s.labels['resource'] == 'stonith-sbd':
                roles[s.labels['role']] = s.value
        assert set(roles) == set(ROLES)
        assert set(roles.values()) == {0}
        assert 'resource stonith-sbd has unknown role Reloading' in caplog.text
