import os

FIXTURES = os.path.join(os.path.dirname(__file__), 'fixtures')


def fixture(name):
    with open(os.path.join(FIXTURES, name)) as fd:
        return fd.read()


def fake_run_command(outputs):
    """Stand-in for run_command answering from a {args tuple: output} table.

    An exception instance as output is raised instead of returned.
    """
    calls = []

    def run(args, timeout, ok_returncodes=(0,)):
        calls.append(tuple(args))
        result = outputs[tuple(args)]
        if isinstance(result, Exception):
            raise result
        return result

    run.calls = calls
    return run


def all_samples(families):
    return [s for family in families for s in family.samples]


def value(families, _name, **labels):
    """Value of the single sample called _name with exactly these labels."""
    matches = [s.value for s in all_samples(families)
               if s.name == _name and s.labels == labels]
    assert len(matches) == 1, '%d samples match %s%r' % (len(matches), _name, labels)
    return matches[0]


def series(families, name):
    return [s.labels for s in all_samples(families) if s.name == name]


def assert_label_arity(collector, families):
    """Every sample carries exactly the labels its descriptor declares."""
    for family in families:
        desc = collector.descriptors[family.name]
        for sample in family.samples:
            assert sorted(sample.labels) == sorted(desc.labels), sample
