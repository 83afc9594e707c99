import fci
import fci.aws_iam
import fci.aws_live
import fci.cli
import fci.compute
import fci.data_store
import fci.edge
import fci.errors
import fci.graph
import fci.junkdrawer
import fci.network
import fci.paths
import fci.plan
import fci.pulumi_resources
import fci.pulumi_resources.aws_courses_stack
import fci.service
import fci.stack
import fci.workload


def test_import_only() -> None:
    assert fci is not None
    assert fci.aws_iam is not None
    assert fci.aws_live is not None
    assert fci.cli is not None
    assert fci.compute is not None
    assert fci.data_store is not None
    assert fci.edge is not None
    assert fci.errors is not None
    assert fci.graph is not None
    assert fci.junkdrawer is not None
    assert fci.network is not None
    assert fci.paths is not None
    assert fci.plan is not None
    assert fci.pulumi_resources is not None
    assert fci.pulumi_resources.aws_courses_stack is not None
    assert fci.service is not None
    assert fci.stack is not None
    assert fci.workload is not None
