import pytest
from unittest.mock import AsyncMock, Mock

from patent_watch.utils.config import BackoffPolicy, Settings


GRANT_XML = """<?xml version="1.0" encoding="UTF-8"?>
<us-patent-grant lang="EN" doc-number="10411897" kind="B1">
<us-bibliographic-data-grant>
<publication-reference><document-id><country>US</country><doc-number>10411897</doc-number></document-id></publication-reference>
<application-reference appl-type="utility"><document-id><country>US</country><doc-number>15456067</doc-number><date>20170310</date></document-id></application-reference>
<invention-title id="d2e53">Systems and methods for load balancing a distributed ledger</invention-title>
<us-parties>
<us-applicants><us-applicant><addressbook><orgname>Inveniam Capital Partners, Inc.</orgname></addressbook></us-applicant></us-applicants>
<inventors>
<inventor><addressbook><last-name>ignored</last-name><given-name>Paul</given-name><family-name>Snow</family-name></addressbook></inventor>
<inventor><addressbook><given-name>Scott</given-name><family-name>Chan</family-name></addressbook></inventor>
</inventors>
</us-parties>
<assignees><assignee><addressbook><orgname>Inveniam Capital Partners, Inc.</orgname></addressbook></assignee></assignees>
<filing-date>20170310</filing-date>
</us-bibliographic-data-grant>
<abstract id="abstract"><p id="p-0001">A blockchain is sharded across nodes &amp; balanced by transaction volume.</p></abstract>
<description id="description"><p>Distributed ledgers store transactions in blocks.</p></description>
<claims id="claims">
<claim id="CLM-00001" num="00001"><claim-text>1. A method comprising: receiving a transaction; and assigning the transaction to a shard.</claim-text></claim>
<claim id="CLM-00002" num="00002"><claim-text>2. The method of <claim-ref idref="CLM-00001">claim 1</claim-ref>, wherein the shard is selected by load.</claim-text></claim>
<claim id="CLM-00003" num="00003"><claim-text>3. A system for verifying documents using a hash chain stored on a ledger.</claim-text></claim>
</claims>
</us-patent-grant>
"""


@pytest.fixture
def settings():
    return Settings(
        uspto_api_key="test-uspto-key",
        anthropic_api_key="test-anthropic-key",
        s3_bucket="test-bucket",
        jwt_secret="test-jwt-secret",
        ocr_polling=BackoffPolicy(interval_seconds=0, max_attempts=3),
    )


@pytest.fixture
def grant_xml():
    return GRANT_XML


@pytest.fixture
def storage():
    client = Mock()
    client.bucket_name = "test-bucket"
    client.put_bytes = AsyncMock(return_value="temp-abc.pdf")
    client.delete_object = AsyncMock(return_value=True)
    client.object_url = Mock(side_effect=lambda key: f"s3://test-bucket/{key}")
    return client
