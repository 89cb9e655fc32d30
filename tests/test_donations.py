import pytest
from bson import ObjectId

from conftest import parse


@pytest.fixture
def donation(client, donor) -> dict:
    response = client.post('/donations', json={
        'amount': 100, 'donorId': str(donor['_id']), 'projectId': 'p1', 'description': 'School books'
    })
    assert response.status_code == 201
    return response.json()


class TestCreateDonation:
    """POST /donations"""

    def test_create_donation_populates_donor(self, client, donor):
        """Test the donor is expanded and defaults applied"""
        response = client.post('/donations', json={
            'amount': 50, 'donorId': str(donor['_id']), 'projectId': '  p1  '
        })

        assert response.status_code == 201
        data = response.json()
        assert data['amount'] == 50
        assert data['projectId'] == 'p1'
        assert data['status'] == 'pending'
        assert data['donorId'] == {'_id': str(donor['_id']), 'name': 'Dan Donor', 'email': 'dan@example.com'}
        assert data['createdAt'] == data['updatedAt']
        assert 'date' in data

    def test_zero_amount_rejected(self, client, donor):
        """Test zero is present but not a positive amount"""
        response = client.post('/donations', json={'amount': 0, 'donorId': str(donor['_id']), 'projectId': 'p1'})

        assert response.status_code == 400
        assert response.json() == {'error': 'Amount must be greater than 0'}

    def test_numeric_string_amount_coerced(self, client, donor):
        """Test numeric strings become numbers"""
        response = client.post('/donations', json={'amount': '25.5', 'donorId': str(donor['_id']), 'projectId': 'p1'})

        assert response.status_code == 201
        assert response.json()['amount'] == 25.5

    def test_amount_beyond_64_bits(self, client, donor):
        """Test very large integers are stored as doubles"""
        response = client.post('/donations', json={
            'amount': 10 ** 19, 'donorId': str(donor['_id']), 'projectId': 'p1'
        })

        assert response.status_code == 201
        assert response.json()['amount'] == 1e19

    def test_non_numeric_amount(self, client, donor):
        """Test a non numeric amount"""
        response = client.post('/donations', json={'amount': 'lots', 'donorId': str(donor['_id']), 'projectId': 'p1'})

        assert response.status_code == 400
        assert response.json()['error'] == 'Amount must be a number'

    def test_missing_fields(self, client):
        """Test missing fields are all named"""
        response = client.post('/donations', json={})

        assert response.status_code == 400
        assert response.json()['error'] == 'Missing required fields: amount, donorId, projectId'

    def test_malformed_donor_id(self, client):
        """Test malformed donor id is rejected before any lookup"""
        response = client.post('/donations', json={'amount': 10, 'donorId': 'abc', 'projectId': 'p1'})

        assert response.status_code == 400
        assert response.json()['error'] == 'Invalid donor ID format. Must be a valid ObjectId.'

    def test_absent_donor(self, client):
        """Test a well formed but unknown donor"""
        response = client.post('/donations', json={'amount': 10, 'donorId': str(ObjectId()), 'projectId': 'p1'})

        assert response.status_code == 404
        assert response.json()['error'] == 'Donor not found'

    def test_errors_are_aggregated(self, client, donor):
        """Test every domain failure is reported at once"""
        response = client.post('/donations', json={
            'amount': -5, 'donorId': str(donor['_id']), 'projectId': 'p1', 'status': 'lost', 'description': 'x' * 201
        })

        assert response.status_code == 400
        assert response.json()['error'] == ', '.join([
            'Amount must be greater than 0',
            'Description cannot be more than 200 characters',
            'Invalid status. Status must be either pending, completed, or cancelled',
        ])


class TestReadDonations:
    """GET /donations, /donations/:id and /donations/donor/:donorId"""

    def test_list_donations(self, client, donation):
        """Test listing populates donors"""
        response = client.get('/donations')

        assert response.status_code == 200
        assert len(response.json()) == 1
        assert response.json()[0]['donorId']['name'] == 'Dan Donor'

    def test_get_donation(self, client, donation):
        """Test fetching a single donation"""
        response = client.get(f'/donations/{donation["_id"]}')

        assert response.status_code == 200
        assert response.json()['description'] == 'School books'

    def test_donations_by_donor(self, client, donation, make_user):
        """Test filtering by donor"""
        other = make_user('donor')
        client.post('/donations', json={'amount': 5, 'donorId': str(other['_id']), 'projectId': 'p2'})

        response = client.get(f'/donations/donor/{donation["donorId"]["_id"]}')

        assert response.status_code == 200
        assert [d['_id'] for d in response.json()] == [donation['_id']]

    def test_donations_by_donor_without_donations(self, client, make_user):
        """Test an existing donor with no donations gets an empty list"""
        user = make_user('donor')

        response = client.get(f'/donations/donor/{user["_id"]}')

        assert response.status_code == 200
        assert response.json() == []

    def test_donations_by_absent_donor(self, client):
        """Test an unknown donor is not found rather than an empty list"""
        response = client.get(f'/donations/donor/{ObjectId()}')

        assert response.status_code == 404
        assert response.json()['error'] == 'Donor not found'

    def test_donations_by_malformed_donor(self, client):
        """Test malformed donor id"""
        response = client.get('/donations/donor/nope')

        assert response.status_code == 400
        assert response.json()['error'] == 'Invalid donor ID format. Must be a valid ObjectId.'

    def test_deleted_donor_populates_as_null(self, client, donation):
        """Test references are weak"""
        client.delete(f'/users/{donation["donorId"]["_id"]}')

        response = client.get(f'/donations/{donation["_id"]}')

        assert response.status_code == 200
        assert response.json()['donorId'] is None


class TestUpdateDonation:
    """PUT /donations/:id"""

    def test_status_only_update(self, client, donation):
        """Test omitted fields are untouched"""
        response = client.put(f'/donations/{donation["_id"]}', json={'status': 'completed'})

        assert response.status_code == 200
        data = response.json()
        assert data['status'] == 'completed'
        for field in ('amount', 'projectId', 'description', 'donorId', 'date', 'createdAt'):
            assert data[field] == donation[field]
        assert parse(data['updatedAt']) > parse(donation['updatedAt'])

    def test_update_invalid_amount(self, client, donation):
        """Test supplied amount is validated"""
        response = client.put(f'/donations/{donation["_id"]}', json={'amount': 0})

        assert response.status_code == 400
        assert response.json()['error'] == 'Amount must be greater than 0'

    def test_update_reassigns_donor(self, client, donation, make_user):
        """Test the donor can be changed to another existing user"""
        other = make_user('donor', name='Olga')

        response = client.put(f'/donations/{donation["_id"]}', json={'donorId': str(other['_id'])})

        assert response.status_code == 200
        assert response.json()['donorId']['name'] == 'Olga'

    def test_update_to_absent_donor(self, client, donation):
        """Test reassigning to an unknown donor"""
        response = client.put(f'/donations/{donation["_id"]}', json={'donorId': str(ObjectId())})

        assert response.status_code == 404
        assert response.json()['error'] == 'Donor not found'

    def test_update_missing_donation(self, client):
        """Test target existence is checked first"""
        response = client.put(f'/donations/{ObjectId()}', json={'amount': -1})

        assert response.status_code == 404
        assert response.json()['error'] == 'Donation not found'

    def test_update_invalid_id(self, client):
        """Test malformed donation id"""
        response = client.put('/donations/bad', json={'amount': 5})

        assert response.status_code == 400
        assert response.json()['error'] == 'Invalid donation ID'


class TestDeleteDonation:
    """DELETE /donations/:id"""

    def test_delete_donation(self, client, donation):
        """Test delete response shape"""
        response = client.delete(f'/donations/{donation["_id"]}')

        assert response.status_code == 200
        data = response.json()
        assert data['message'] == 'Donation deleted successfully'
        assert data['donation']['_id'] == donation['_id']
        assert data['donation']['donorId'] == donation['donorId']['_id']

    def test_delete_twice(self, client, donation):
        """Test the second delete is not found"""
        client.delete(f'/donations/{donation["_id"]}')

        response = client.delete(f'/donations/{donation["_id"]}')

        assert response.status_code == 404
        assert response.json()['error'] == 'Donation not found'
